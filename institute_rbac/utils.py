"""
Shared helpers.
"""
import logging
import sys

from institute_rbac.core import config

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root = logging.getLogger("institute_rbac")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger under the ``institute_rbac`` hierarchy.

    Usage:
        log = get_logger(__name__)
        log.info("Role created")
    """
    _configure_root()
    if not name.startswith("institute_rbac"):
        name = f"institute_rbac.{name}"
    return logging.getLogger(name)
