"""Staybook services; each lives under ``apps/<service>/app``."""
