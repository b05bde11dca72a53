# Re-export the pieces most callers need so they can
# from readwatch import Application, load_run_config
from readwatch.app import Application  # noqa: F401
from readwatch.config import load_run_config  # noqa: F401

__all__ = ["Application", "load_run_config"]

__version__ = "0.1.0"
