from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EntryKind = Literal["file", "dir"]
ManifestType = Literal["file", "dir", "link", "fifo", "char", "block", "socket"]
OwnershipMode = Literal["preserve", "root"]


class PackageRequest(BaseModel):
    """Name of the installed package to rebuild."""

    model_config = ConfigDict(frozen=True)

    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("package name must not be empty")
        if "/" in value or any(ch.isspace() for ch in value):
            raise ValueError(f"invalid package name: {value!r}")
        return value


class InstalledEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    kind: EntryKind = "file"


class InstalledFileSet(BaseModel):
    package: str
    entries: List[InstalledEntry] = Field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


class Ownership(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: int = Field(default=0, ge=0)
    gid: int = Field(default=0, ge=0)
    uname: str = ""
    gname: str = ""


ROOT_OWNERSHIP = Ownership(uid=0, gid=0, uname="root", gname="root")


class PackageMetadata(BaseModel):
    name: str
    version: str = ""
    description: str = ""
    url: str = ""
    build_date: int = Field(default=0, ge=0)
    packager: str = ""
    total_size: int = Field(default=0, ge=0)
    architecture: str = ""
    license: str = ""
    dependencies: List[str] = Field(default_factory=list)

    def archive_name(self) -> str:
        return f"{self.name}-{self.version}-{self.architecture}.pkg.tar.zst"


class ManifestEntry(BaseModel):
    path: str
    type: ManifestType
    uid: int = 0
    gid: int = 0
    mode: int = 0o644
    mtime: int = 0
    mtime_nsec: int = 0
    size: Optional[int] = None
    md5: Optional[str] = None
    sha256: Optional[str] = None
    link: Optional[str] = None

    @model_validator(mode="after")
    def validate_by_type(self):
        if self.type == "file":
            if self.size is None or not self.md5 or not self.sha256:
                raise ValueError(f"{self.path}: file entries need size, md5 and sha256")
        elif self.md5 or self.sha256:
            raise ValueError(f"{self.path}: only file entries carry content digests")
        if self.type == "link" and self.link is None:
            raise ValueError(f"{self.path}: link entries need a target")
        return self


class ChecksumRecord(BaseModel):
    archive: str
    md5: str

    def line(self) -> str:
        # md5sum two-column format: digest, two spaces, file name
        return f"{self.md5}  {self.archive}\n"


class RecreateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    work_root: Path = Field(default_factory=lambda: Path.home() / "recreate_package")
    output_dir: Path = Field(default_factory=lambda: Path.home() / "recreated_packages")
    source_root: Path = Path("/")
    use_sudo: bool = True
    sudo_cmd: List[str] = Field(default_factory=lambda: ["sudo"])
    pacman_cmd: List[str] = Field(default_factory=lambda: ["pacman"])
    zstd_level: int = Field(default=19, ge=1, le=22)
    zstd_threads: int = -1
    long_range: bool = True
    mtree_gzip: bool = True
    ownership: OwnershipMode = "preserve"
    copy_workers: int = Field(default=1, ge=1, le=64)
    fail_fast: bool = False
    max_copy_failures: int = Field(default=0, ge=0)
    allow_empty: bool = False
    deep_verify: bool = True
    arch: Optional[str] = None
    packager: Optional[str] = None

    @field_validator("work_root", "output_dir", "source_root", mode="after")
    @classmethod
    def expand_path(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("sudo_cmd", "pacman_cmd")
    @classmethod
    def validate_cmd(cls, value: List[str]) -> List[str]:
        if not value or not value[0]:
            raise ValueError("command must be a non-empty list of arguments")
        return value
