from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .classify import Arch, Filetype, TargetOS, parse_arch, parse_filetype, parse_os
from .errors import InvalidFormat
from .version import Version

MIN_INSTANT = datetime.min.replace(tzinfo=timezone.utc)


class Channel(str, Enum):
    STABLE = "stable"
    BETA = "beta"
    NIGHTLY = "nightly"
    ALL = "all"


class Provider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    GITEA = "gitea"
    DIRECT = "direct"


@dataclass(frozen=True)
class Asset:
    id: int
    name: str
    download_url: str
    size: int = 0
    created_at: datetime = MIN_INSTANT
    filetype: Filetype = field(init=False)
    target_os: TargetOS = field(init=False)
    target_arch: Arch = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "filetype", parse_filetype(self.name))
        object.__setattr__(self, "target_os", parse_os(self.name))
        object.__setattr__(self, "target_arch", parse_arch(self.name))


@dataclass(frozen=True)
class Release:
    id: int
    tag: str
    name: str
    body: str
    is_draft: bool
    is_prerelease: bool
    assets: tuple[Asset, ...]
    version: Version
    published_at: datetime = MIN_INSTANT

    def find_asset(self, name: str) -> Asset | None:
        wanted = name.lower()
        for asset in self.assets:
            if asset.name.lower() == wanted:
                return asset
        return None


@dataclass(frozen=True)
class PackageReference:
    name: str
    repo_slug: str
    filetype: Filetype
    channel: Channel = Channel.STABLE
    provider: Provider = Provider.GITHUB
    base_url: str | None = None
    match_pattern: str | None = None
    exclude_pattern: str | None = None

    def to_package(self) -> "Package":
        return Package(
            name=self.name,
            repo_slug=self.repo_slug,
            provider=self.provider,
            channel=self.channel,
            filetype=self.filetype,
            match_pattern=self.match_pattern,
            exclude_pattern=self.exclude_pattern,
            base_url=self.base_url,
        )

    @classmethod
    def from_package(cls, pkg: "Package") -> "PackageReference":
        return cls(
            name=pkg.name,
            repo_slug=pkg.repo_slug,
            filetype=pkg.filetype,
            channel=pkg.channel,
            provider=pkg.provider,
            base_url=pkg.base_url,
            match_pattern=pkg.match_pattern,
            exclude_pattern=pkg.exclude_pattern,
        )


def _opt_path(value: Path | None) -> str | None:
    return str(value) if value is not None else None


def _format_instant(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Package:
    name: str
    repo_slug: str
    provider: Provider
    channel: Channel
    filetype: Filetype
    match_pattern: str | None = None
    exclude_pattern: str | None = None
    base_url: str | None = None
    version: Version = field(default_factory=Version)
    is_pinned: bool = False
    install_path: Path | None = None
    exec_path: Path | None = None
    icon_path: Path | None = None
    last_upgraded: datetime | None = None

    @property
    def identity(self) -> tuple[Any, ...]:
        return (
            self.name,
            self.repo_slug,
            self.provider,
            self.channel,
            self.filetype,
            self.match_pattern,
            self.exclude_pattern,
            self.base_url,
        )

    def same_as(self, other: "Package") -> bool:
        return self.identity == other.identity

    @property
    def is_installed(self) -> bool:
        return self.install_path is not None

    def mark_installed(
        self,
        *,
        version: Version,
        install_path: Path,
        exec_path: Path,
        icon_path: Path | None = None,
        when: datetime | None = None,
    ) -> None:
        self.version = version
        self.install_path = install_path
        self.exec_path = exec_path
        self.icon_path = icon_path
        self.last_upgraded = when or datetime.now(timezone.utc)

    def clear_install(self) -> None:
        self.install_path = None
        self.exec_path = None
        self.icon_path = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "repo_slug": self.repo_slug,
            "provider": self.provider.value,
            "channel": self.channel.value,
            "filetype": self.filetype.value,
            "match_pattern": self.match_pattern,
            "exclude_pattern": self.exclude_pattern,
            "base_url": self.base_url,
            "version": {
                "major": self.version.major,
                "minor": self.version.minor,
                "patch": self.version.patch,
                "is_prerelease": self.version.is_prerelease,
            },
            "is_pinned": self.is_pinned,
            "install_path": _opt_path(self.install_path),
            "exec_path": _opt_path(self.exec_path),
            "icon_path": _opt_path(self.icon_path),
            "last_upgraded": _format_instant(self.last_upgraded),
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "Package":
        if not isinstance(obj, dict):
            raise InvalidFormat("Package record must be an object.")
        try:
            name = obj["name"]
            repo_slug = obj["repo_slug"]
            if not isinstance(name, str) or not name or not isinstance(repo_slug, str):
                raise InvalidFormat("Package record needs string 'name' and 'repo_slug'.")
            raw_version = obj.get("version") or {}
            if not isinstance(raw_version, dict):
                raise InvalidFormat(f"Package {name!r} has an invalid version record.")
            version = Version(
                major=int(raw_version.get("major", 0)),
                minor=int(raw_version.get("minor", 0)),
                patch=int(raw_version.get("patch", 0)),
                is_prerelease=bool(raw_version.get("is_prerelease", False)),
            )
            install_path = _path_or_none(obj.get("install_path"))
            exec_path = _path_or_none(obj.get("exec_path"))
            if (install_path is None) != (exec_path is None):
                raise InvalidFormat(f"Package {name!r} must set install_path and exec_path together.")
            last_raw = obj.get("last_upgraded")
            last_upgraded = datetime.fromisoformat(last_raw.replace("Z", "+00:00")) if last_raw else None
            return cls(
                name=name,
                repo_slug=repo_slug,
                provider=Provider(obj["provider"]),
                channel=Channel(obj["channel"]),
                filetype=Filetype(obj["filetype"]),
                match_pattern=obj.get("match_pattern"),
                exclude_pattern=obj.get("exclude_pattern"),
                base_url=obj.get("base_url"),
                version=version,
                is_pinned=bool(obj.get("is_pinned", False)),
                install_path=install_path,
                exec_path=exec_path,
                icon_path=_path_or_none(obj.get("icon_path")),
                last_upgraded=last_upgraded,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            if isinstance(e, InvalidFormat):
                raise
            raise InvalidFormat(f"Invalid package record: {e}") from e


def _path_or_none(value: Any) -> Path | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidFormat(f"Expected a path string, got {type(value).__name__}.")
    return Path(value)
