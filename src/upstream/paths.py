from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_path, user_config_path, user_data_path

from .config import APP_NAME


@dataclass(frozen=True)
class UpstreamPaths:
    config_dir: Path
    data_dir: Path
    cache_dir: Path
    applications_dir: Path
    icons_dir: Path

    @classmethod
    def default(cls, data_dir: str | Path | None = None) -> "UpstreamPaths":
        data = Path(data_dir).expanduser() if data_dir else user_data_path(APP_NAME)
        share = Path.home() / ".local" / "share"
        return cls(
            config_dir=user_config_path(APP_NAME),
            data_dir=data,
            cache_dir=user_cache_path(APP_NAME),
            applications_dir=share / "applications",
            icons_dir=share / "icons",
        )

    @classmethod
    def from_root(cls, root: Path) -> "UpstreamPaths":
        return cls(
            config_dir=root / "config",
            data_dir=root / "data",
            cache_dir=root / "cache",
            applications_dir=root / "share" / "applications",
            icons_dir=root / "share" / "icons",
        )

    @property
    def metadata_dir(self) -> Path:
        return self.data_dir / "metadata"

    @property
    def packages_file(self) -> Path:
        return self.metadata_dir / "packages.json"

    @property
    def paths_file(self) -> Path:
        return self.metadata_dir / "paths.sh"

    @property
    def appimages_dir(self) -> Path:
        return self.data_dir / "appimages"

    @property
    def binaries_dir(self) -> Path:
        return self.data_dir / "binaries"

    @property
    def symlinks_dir(self) -> Path:
        return self.data_dir / "symlinks"

    def ensure(self) -> None:
        for d in (self.metadata_dir, self.appimages_dir, self.binaries_dir, self.symlinks_dir, self.cache_dir):
            d.mkdir(parents=True, exist_ok=True)
