from ._version import __version__
from .errors import UpstreamError
from .models import Channel, Filetype, Package, PackageReference, Provider
from .version import Version

__all__ = [
    "Channel",
    "Filetype",
    "Package",
    "PackageReference",
    "Provider",
    "UpstreamError",
    "Version",
    "__version__",
]
