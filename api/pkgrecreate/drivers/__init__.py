"""External collaborators: the package database and the privileged copier."""

from pkgrecreate.drivers.copier import DirectCopier, PrivilegedCopier, SudoCopier
from pkgrecreate.drivers.database import PackageDatabase, PacmanDatabase, parse_info_output

__all__ = [
    "DirectCopier",
    "PackageDatabase",
    "PacmanDatabase",
    "PrivilegedCopier",
    "SudoCopier",
    "parse_info_output",
]
