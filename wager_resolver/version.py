"""
Version information for the wager resolver.
"""
import importlib.metadata
import pathlib

import tomli

DISTRIBUTION = "wager-resolver"
DEFAULT_VERSION = "0.1.0"


def _version_from_pyproject() -> str:
    path = pathlib.Path(__file__).parent.parent / "pyproject.toml"
    try:
        with path.open("rb") as f:
            return str(tomli.load(f)["project"]["version"])
    except (OSError, KeyError, TypeError, tomli.TOMLDecodeError):
        return DEFAULT_VERSION


try:
    __version__ = importlib.metadata.version(DISTRIBUTION)
except importlib.metadata.PackageNotFoundError:
    # Running from a source checkout
    __version__ = _version_from_pyproject()
