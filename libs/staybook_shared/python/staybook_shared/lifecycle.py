from collections.abc import Callable

from fastapi import FastAPI


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a startup hook without using FastAPI's deprecated @on_event API.
    Usage:
        @register_startup(app)
        def _create_schema(): ...
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a shutdown hook (e.g. disposing the SQLAlchemy engine).
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_shutdown.append(func)
        return func
    return decorator
