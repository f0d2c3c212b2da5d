"""
Detecting the framework's own version.

The version is taken from the installed distribution's metadata,
so that it is declared only once: in the packaging files.
It is determined only once at startup when the code is loaded.
"""
import importlib.metadata

version: str | None = None

try:
    name, *_ = __name__.split('.')  # usually "kontrol", unless renamed/forked.
    version = importlib.metadata.version(name)
except importlib.metadata.PackageNotFoundError:
    pass  # not installed, e.g. run from a source checkout.
