from ._version import __version__
from .client import GitHubSource, PackageRef, RegistryClient, TreeEntry, parse_package_id
from .errors import UpdoseError
from .sync import AddResult, BoilerplateManager, UpdateResult

__all__ = [
    "__version__",
    "AddResult",
    "BoilerplateManager",
    "GitHubSource",
    "PackageRef",
    "RegistryClient",
    "TreeEntry",
    "UpdateResult",
    "UpdoseError",
    "parse_package_id",
]
