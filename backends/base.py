import abc
from datetime import datetime
from typing import List, Mapping, Optional, Union

import requests


class VfsDir:
    def __init__(self, remote: str, mod_time: datetime):
        self.remote = remote
        self.mod_time = mod_time

    def __repr__(self):
        return f"VfsDir({self.remote!r})"


class VfsObject(abc.ABC):
    """A file the caching engine can stat and read."""

    @property
    @abc.abstractmethod
    def remote(self) -> str:
        pass

    @abc.abstractmethod
    def size(self) -> int:
        """Length in bytes, or -1 when unknown."""
        pass

    @abc.abstractmethod
    def mod_time(self) -> datetime:
        pass

    def mime_type(self) -> str:
        return ""

    def fingerprint(self) -> str:
        """Identify this version of the content.

        Cached data recorded under a different fingerprint is stale.
        """
        return f"{self.size()},{int(self.mod_time().timestamp())}"

    @abc.abstractmethod
    def open(self, headers: Optional[Mapping[str, str]] = None) -> requests.Response:
        """Open a streaming body. ``headers`` override stored request headers (e.g. Range)."""
        pass

    @abc.abstractmethod
    def set_mod_time(self, mod_time: datetime) -> None:
        pass

    @abc.abstractmethod
    def remove(self) -> None:
        pass

    @abc.abstractmethod
    def update(self, data) -> None:
        pass

    def __str__(self):
        return self.remote


class VirtualFs(abc.ABC):
    """Read-only capability set consumed by the caching engine."""

    def __init__(self, name: str, root: str = ""):
        self.name = name
        self.root = root

    @property
    def precision(self) -> float:
        """Modification time precision in seconds."""
        return 1.0

    @abc.abstractmethod
    def new_object(self, remote: str) -> VfsObject:
        """Return the object at ``remote`` or raise ObjectNotFound."""
        pass

    def stat(self, remote: str) -> VfsObject:
        return self.new_object(remote)

    @abc.abstractmethod
    def list(self, dir: str) -> List[Union[VfsObject, VfsDir]]:
        pass

    @abc.abstractmethod
    def put(self, data, remote: str) -> VfsObject:
        pass

    @abc.abstractmethod
    def mkdir(self, dir: str) -> None:
        pass

    @abc.abstractmethod
    def rmdir(self, dir: str) -> None:
        pass

    @abc.abstractmethod
    def move(self, src: str, dst: str) -> VfsObject:
        pass

    def shutdown(self) -> None:
        """Release network resources held by the backend."""
        pass
