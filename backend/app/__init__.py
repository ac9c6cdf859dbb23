"""Backend application package for the project management service."""

from importlib.metadata import version, PackageNotFoundError

__all__ = ["__version__"]

try:
    __version__ = version("project-management-backend")
except PackageNotFoundError:  # pragma: no cover - local dev without packaging
    __version__ = "0.1.0"
