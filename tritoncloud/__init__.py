"""Interface to the Triton CloudAPI."""

from importlib.metadata import PackageNotFoundError, version

from . import logger_base  # noqa: F401 registers TRACE and NOTICE levels

try:
    __version__ = version("triton-cloudapi")
except PackageNotFoundError:
    # not installed, e.g. running from a source checkout
    __version__ = "0.0.0"
