import logging
import os
from collections.abc import Callable, Mapping

from fastapi import FastAPI

_log = logging.getLogger("staybook.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Mapping[str, Callable[[], object]] | None = None,
):
    """
    Register ``GET /health``.

    ``checks`` maps a name to a zero-argument probe (e.g. a ``SELECT 1``);
    a probe that raises marks the service as degraded instead of failing
    the request.
    """

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        status = "ok"
        for name, probe in (checks or {}).items():
            try:
                probe()
                results[name] = "ok"
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                results[name] = "error"
                status = "degraded"
        body = {
            "status": status,
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if results:
            body["checks"] = results
        return body
