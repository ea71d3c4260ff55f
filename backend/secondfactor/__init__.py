"""SecondFactor two-factor authentication service."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("secondfactor")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
