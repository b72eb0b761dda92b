from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from . import checksums
from .classify import HostPlatform
from .errors import FilesystemError, InvalidState
from .paths import UpstreamPaths

logger = logging.getLogger(__name__)

PATHS_HEADER = "# Managed by upstream. Source this file from your shell profile.\n"


class Integration(Protocol):
    def make_executable(self, path: Path) -> None:
        ...

    def add_link(self, name: str, target: Path) -> Path:
        ...

    def remove_link(self, name: str) -> None:
        ...

    def add_to_path(self, directory: Path) -> bool:
        ...

    def remove_from_path(self, directory: Path) -> None:
        ...

    def install_icon(self, name: str, source: Path) -> Path:
        ...

    def remove_icon(self, icon_path: Path) -> None:
        ...

    def write_desktop_entry(self, name: str, exec_path: Path, icon_path: Path | None) -> Path:
        ...

    def remove_desktop_entry(self, name: str) -> None:
        ...

    def has_desktop_entry(self, name: str) -> bool:
        ...

    def verify_checksum(self, path: Path, expected: str, algorithm: str | None = None) -> None:
        ...


def shell_escape(value: str) -> str:
    out = value
    for ch in ("\\", '"', "$", "`"):
        out = out.replace(ch, "\\" + ch)
    return out


def path_export_line(directory: Path) -> str:
    return f'export PATH="{shell_escape(str(directory))}:$PATH"'


@dataclass(frozen=True)
class DesktopEntry:
    name: str
    exec_path: Path
    icon_path: Path | None = None
    comment: str = ""
    categories: str = "Application;"
    terminal: bool = False

    def render(self) -> str:
        lines = [
            "[Desktop Entry]",
            "Type=Application",
            "Version=1.0",
            f"Name={self.name}",
            f'Exec="{self.exec_path}" %U',
            f"Icon={self.icon_path or ''}",
            f"Comment={self.comment or self.name}",
            f"Categories={self.categories}",
            f"Terminal={'true' if self.terminal else 'false'}",
        ]
        return "\n".join(lines) + "\n"


class SystemIntegration:
    def __init__(self, paths: UpstreamPaths, host: HostPlatform | None = None) -> None:
        self.paths = paths
        self.host = host or HostPlatform.detect()

    def make_executable(self, path: Path) -> None:
        if self.host.is_windows:
            return
        try:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="make executable") from e

    def link_path(self, name: str) -> Path:
        if self.host.is_windows:
            return self.paths.symlinks_dir / f"{name}.exe"
        return self.paths.symlinks_dir / name

    def add_link(self, name: str, target: Path) -> Path:
        link = self.link_path(name)
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.is_file():
                link.unlink()
            elif link.exists():
                raise InvalidState(f"{link} exists and is not a link", package=name, stage="link")
            if self.host.is_windows:
                # Symlinks need elevated rights on Windows.
                os.link(target, link)
            else:
                link.symlink_to(target)
        except OSError as e:
            raise FilesystemError.from_os_error(e, package=name, stage="link") from e
        return link

    def remove_link(self, name: str) -> None:
        link = self.link_path(name)
        if not link.is_symlink() and not link.exists():
            return
        if link.is_dir() and not link.is_symlink():
            raise InvalidState(f"Refusing to remove directory {link}", package=name, stage="unlink")
        try:
            link.unlink()
        except OSError as e:
            raise FilesystemError.from_os_error(e, package=name, stage="unlink") from e

    def _read_paths_file(self) -> str:
        try:
            return self.paths.paths_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return PATHS_HEADER
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="read paths") from e

    def _write_paths_file(self, content: str) -> None:
        target = self.paths.paths_file
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(target)
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="write paths") from e

    def add_to_path(self, directory: Path) -> bool:
        line = path_export_line(directory)
        content = self._read_paths_file()
        if line in content.splitlines():
            return False
        if content and not content.endswith("\n"):
            content += "\n"
        self._write_paths_file(content + line + "\n")
        logger.debug("added %s to %s", directory, self.paths.paths_file)
        return True

    def remove_from_path(self, directory: Path) -> None:
        if not self.paths.paths_file.exists():
            return
        line = path_export_line(directory)
        content = self._read_paths_file()
        kept = [existing for existing in content.splitlines() if existing != line]
        updated = "\n".join(kept) + "\n" if kept else ""
        if updated != content:
            self._write_paths_file(updated)

    def path_entries(self) -> list[str]:
        if not self.paths.paths_file.exists():
            return []
        return [ln for ln in self._read_paths_file().splitlines() if ln.startswith("export PATH=")]

    def desktop_entry_path(self, name: str) -> Path:
        return self.paths.applications_dir / f"{name}.desktop"

    def install_icon(self, name: str, source: Path) -> Path:
        suffix = source.suffix if source.suffix in (".png", ".svg", ".xpm") else ".png"
        dest = self.paths.icons_dir / f"{name}{suffix}"
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source.resolve(), dest)
        except OSError as e:
            raise FilesystemError.from_os_error(e, package=name, stage="icon") from e
        return dest

    def remove_icon(self, icon_path: Path) -> None:
        try:
            icon_path.unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="icon") from e

    def write_desktop_entry(self, name: str, exec_path: Path, icon_path: Path | None) -> Path:
        dest = self.desktop_entry_path(name)
        entry = DesktopEntry(name=name, exec_path=exec_path, icon_path=icon_path)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(entry.render(), encoding="utf-8")
        except OSError as e:
            raise FilesystemError.from_os_error(e, package=name, stage="desktop entry") from e
        return dest

    def remove_desktop_entry(self, name: str) -> None:
        try:
            self.desktop_entry_path(name).unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError.from_os_error(e, package=name, stage="desktop entry") from e

    def has_desktop_entry(self, name: str) -> bool:
        return self.desktop_entry_path(name).is_file()

    def verify_checksum(self, path: Path, expected: str, algorithm: str | None = None) -> None:
        checksums.verify_checksum(path, expected, algorithm)
