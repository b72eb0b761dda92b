from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from . import archives
from .checksums import algorithm_for, expected_digest, find_checksum_asset
from .classify import Filetype, HostPlatform
from .client import ProgressCallback
from .errors import CorruptStore, FilesystemError, InvalidState, UpstreamError
from .integration import Integration, SystemIntegration
from .models import Asset, Package, PackageReference, Release
from .paths import UpstreamPaths
from .progress import NullReporter, Reporter
from .registry import PackageRegistry, RegistryStore
from .selector import select_asset
from .version import Version

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".old"
APPIMAGE_EXEC = "AppRun"
APPIMAGE_ICON = ".DirIcon"


class ReleaseProvider(Protocol):
    async def latest_release(self, package: Package) -> Release:
        ...

    async def download_asset(
        self,
        package: Package,
        asset: Asset,
        dest: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        ...


@dataclass(frozen=True)
class Placement:
    install_path: Path
    exec_path: Path
    icon_source: Path | None = None


@dataclass
class UpgradeReport:
    upgraded: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    available: list[tuple[str, Version, Version]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class BulkReport:
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _best_effort(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except (UpstreamError, OSError) as e:
        logger.warning("cleanup step %s%r failed: %s", getattr(fn, "__name__", fn), args, e)


@contextmanager
def _stage(package: str, stage: str) -> Iterator[None]:
    try:
        yield
    except UpstreamError as e:
        raise e.with_context(package=package, stage=stage)
    except OSError as e:
        raise FilesystemError.from_os_error(e, package=package, stage=stage) from e


class LifecycleEngine:
    """
    Install, upgrade and remove packages. The registry is read once at construction
    and saved after every completed package.
    """

    def __init__(
        self,
        *,
        paths: UpstreamPaths,
        store: RegistryStore,
        providers: ReleaseProvider,
        integration: Integration | None = None,
        host: HostPlatform | None = None,
        reporter: Reporter | None = None,
        verify_checksums: bool = True,
    ) -> None:
        self.paths = paths
        self.store = store
        self.providers = providers
        self.host = host or HostPlatform.detect()
        self.integration: Integration = integration or SystemIntegration(paths, self.host)
        self.reporter: Reporter = reporter or NullReporter()
        self.verify_checksums = verify_checksums
        self.registry: PackageRegistry = store.load()

    # Queries

    def packages(self) -> list[Package]:
        return list(self.registry)

    def set_pinned(self, name: str, pinned: bool) -> Package:
        pkg = self.registry.require(name)
        pkg.is_pinned = pinned
        self.store.save(self.registry)
        return pkg

    # Install

    def _resolve_for_install(self, target: PackageReference | str) -> Package:
        if isinstance(target, str):
            # Work on a copy; the tracked record changes only once the install is saved.
            pkg = replace(self.registry.require(target))
        else:
            existing = self.registry.get(target.name)
            pkg = target.to_package()
            if existing is not None:
                if existing.is_installed:
                    raise InvalidState(f"{target.name} is already installed", package=target.name, stage="resolve")
                pkg.is_pinned = existing.is_pinned
        if pkg.is_installed:
            raise InvalidState(f"{pkg.name} is already installed", package=pkg.name, stage="resolve")
        return pkg

    async def install(self, target: PackageReference | str, *, desktop_entry: bool = False) -> Package:
        pkg = self._resolve_for_install(target)
        name = pkg.name
        self.reporter.message(f"Resolving {name} from {pkg.repo_slug}")
        with _stage(name, "fetch"):
            release = await self.providers.latest_release(pkg)
        with _stage(name, "select"):
            asset = select_asset(release, PackageReference.from_package(pkg), self.host)

        previous = self.registry.get(name)
        with ExitStack() as undo:
            placement = await self._fetch_and_place(pkg, release, asset, undo)
            with _stage(name, "integrate"):
                icon_path = self._integrate(pkg, placement, undo, desktop_entry=desktop_entry)
            with _stage(name, "register"):
                pkg.mark_installed(
                    version=release.version,
                    install_path=placement.install_path,
                    exec_path=placement.exec_path,
                    icon_path=icon_path,
                )
                self.registry.put(pkg)
                undo.callback(self._restore_entry, name, previous)
                self.store.save(self.registry)
            undo.pop_all()

        self.reporter.message(f"Installed {name} {release.version}")
        return pkg

    def _restore_entry(self, name: str, previous: Package | None) -> None:
        if previous is None:
            self.registry.remove(name)
        else:
            self.registry.put(previous)

    async def _fetch_and_place(self, pkg: Package, release: Release, asset: Asset, undo: ExitStack) -> Placement:
        self.paths.cache_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="upstream-", dir=self.paths.cache_dir) as td:
            scratch = Path(td)
            self.reporter.message(f"Downloading {asset.name}")
            with _stage(pkg.name, "download"):
                downloaded = await self.providers.download_asset(
                    pkg, asset, scratch / asset.name, on_progress=self.reporter.progress
                )
            if self.verify_checksums:
                with _stage(pkg.name, "verify"):
                    await self._verify(pkg, release, asset, downloaded, scratch)
            with _stage(pkg.name, "place"):
                return await self._place(pkg, asset, downloaded, scratch, undo)

    async def _verify(self, pkg: Package, release: Release, asset: Asset, downloaded: Path, scratch: Path) -> None:
        checksum_asset = find_checksum_asset(release, asset)
        if checksum_asset is None:
            return
        sums_dir = scratch / "checksums"
        sums_dir.mkdir()
        sums_file = await self.providers.download_asset(pkg, checksum_asset, sums_dir / checksum_asset.name)
        digest = expected_digest(sums_file.read_text(encoding="utf-8", errors="replace"), asset.name)
        if digest is None:
            logger.debug("%s lists no digest for %s", checksum_asset.name, asset.name)
            return
        self.integration.verify_checksum(downloaded, digest, algorithm_for(digest))
        self.reporter.message(f"Verified checksum of {asset.name}")

    def _target_dir(self, pkg: Package, filetype: Filetype) -> Path:
        if filetype == Filetype.APPIMAGE:
            return self.paths.appimages_dir / pkg.name
        return self.paths.binaries_dir / pkg.name

    async def _place(self, pkg: Package, asset: Asset, downloaded: Path, scratch: Path, undo: ExitStack) -> Placement:
        filetype = asset.filetype
        if filetype == Filetype.CHECKSUM:
            raise InvalidState(f"{asset.name} is a checksum file, not an installable artifact")

        target = self._target_dir(pkg, filetype)
        if target.exists() or target.is_symlink():
            raise InvalidState(f"{target} already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        undo.callback(_best_effort, _remove_path, target)

        if filetype == Filetype.APPIMAGE:
            self.reporter.message(f"Extracting {asset.name}")
            root = await archives.extract_appimage(downloaded, scratch)
            shutil.move(str(root), str(target))
            icon = target / APPIMAGE_ICON
            return Placement(target, target / APPIMAGE_EXEC, icon if icon.exists() else None)

        if filetype == Filetype.ARCHIVE:
            self.reporter.message(f"Unpacking {asset.name}")
            root = archives.extract_archive(downloaded, scratch / "unpacked")
            shutil.move(str(root), str(target))
            return Placement(target, archives.locate_executable(target, pkg.name, self.host))

        target.mkdir()
        if filetype == Filetype.COMPRESSED:
            return Placement(target, archives.decompress_file(downloaded, target))

        dest = target / asset.name
        shutil.move(str(downloaded), str(dest))
        return Placement(target, dest)

    def _integrate(self, pkg: Package, placement: Placement, undo: ExitStack, *, desktop_entry: bool) -> Path | None:
        name = pkg.name
        self.integration.make_executable(placement.exec_path)
        self.integration.add_link(name, placement.exec_path)
        undo.callback(_best_effort, self.integration.remove_link, name)

        # One PATH line covers every managed link.
        if self.integration.add_to_path(self.paths.symlinks_dir):
            undo.callback(_best_effort, self.integration.remove_from_path, self.paths.symlinks_dir)

        if not desktop_entry:
            return None
        icon_path: Path | None = None
        if placement.icon_source is not None:
            icon_path = self.integration.install_icon(name, placement.icon_source)
            undo.callback(_best_effort, self.integration.remove_icon, icon_path)
        self.integration.write_desktop_entry(name, placement.exec_path, icon_path)
        undo.callback(_best_effort, self.integration.remove_desktop_entry, name)
        return icon_path

    # Upgrade

    async def upgrade_single(self, name: str, *, force: bool = False) -> bool:
        pkg = self.registry.require(name)
        if pkg.is_pinned:
            self.reporter.message(f"{name} is pinned, skipping")
            return False
        if not pkg.is_installed:
            raise InvalidState(f"{name} is not installed", package=name, stage="upgrade")
        with _stage(name, "fetch"):
            release = await self.providers.latest_release(pkg)
        if not force and not release.version.is_newer_than(pkg.version):
            self.reporter.message(f"{name} is up to date ({pkg.version})")
            return False
        await self._apply_upgrade(pkg, release)
        return True

    async def upgrade(
        self,
        names: list[str] | None = None,
        *,
        force: bool = False,
        check_only: bool = False,
    ) -> UpgradeReport:
        targets = list(names) if names else self.registry.names()
        report = UpgradeReport()
        total = len(targets)
        for done, name in enumerate(targets, start=1):
            try:
                pkg = self.registry.require(name)
                if pkg.is_pinned:
                    report.skipped.append(name)
                    self.reporter.message(f"{name} is pinned, skipping")
                elif not pkg.is_installed:
                    raise InvalidState(f"{name} is not installed", package=name, stage="upgrade")
                else:
                    with _stage(name, "fetch"):
                        release = await self.providers.latest_release(pkg)
                    newer = release.version.is_newer_than(pkg.version)
                    if check_only:
                        if newer:
                            report.available.append((name, pkg.version, release.version))
                        else:
                            report.up_to_date.append(name)
                    elif newer or force:
                        await self._apply_upgrade(pkg, release)
                        report.upgraded.append(name)
                    else:
                        report.up_to_date.append(name)
            except CorruptStore:
                raise
            except UpstreamError as e:
                report.failed.append((name, str(e)))
                self.reporter.message(f"Failed to upgrade {name}: {e}")
            self.reporter.progress(done, total)
        return report

    async def check_updates(self, names: list[str] | None = None) -> list[tuple[str, Version, Version]]:
        report = await self.upgrade(names, check_only=True)
        return report.available

    async def _apply_upgrade(self, pkg: Package, release: Release) -> None:
        name = pkg.name
        if pkg.install_path is None or pkg.exec_path is None:
            raise InvalidState(f"{name} is not installed", package=name, stage="upgrade")
        with _stage(name, "select"):
            asset = select_asset(release, PackageReference.from_package(pkg), self.host)

        old_install = pkg.install_path
        old_exec = pkg.exec_path
        old_icon = pkg.icon_path
        had_desktop = self.integration.has_desktop_entry(name)
        old_icon_bytes = old_icon.read_bytes() if old_icon is not None and old_icon.is_file() else None

        backup = old_install.with_name(old_install.name + BACKUP_SUFFIX)
        with _stage(name, "backup"):
            if backup.exists() or backup.is_symlink():
                _remove_path(backup)
            has_backup = old_install.exists() or old_install.is_symlink()
            if has_backup:
                old_install.rename(backup)

        self.reporter.message(f"Upgrading {name} {pkg.version} -> {release.version}")
        try:
            with ExitStack() as undo:
                placement = await self._fetch_and_place(pkg, release, asset, undo)
                with _stage(name, "integrate"):
                    icon_path = self._integrate(pkg, placement, undo, desktop_entry=had_desktop)
                undo.pop_all()
        except BaseException:
            if has_backup:
                _best_effort(_remove_path, old_install)
                _best_effort(backup.rename, old_install)
            _best_effort(self.integration.add_link, name, old_exec)
            if old_icon is not None and old_icon_bytes is not None:
                _best_effort(old_icon.write_bytes, old_icon_bytes)
            if had_desktop:
                _best_effort(self.integration.write_desktop_entry, name, old_exec, old_icon)
            raise

        if has_backup:
            _best_effort(_remove_path, backup)
        if had_desktop and icon_path is None and old_icon is not None:
            _best_effort(self.integration.remove_icon, old_icon)
        with _stage(name, "register"):
            pkg.mark_installed(
                version=release.version,
                install_path=placement.install_path,
                exec_path=placement.exec_path,
                icon_path=icon_path if had_desktop else old_icon,
            )
            self.store.save(self.registry)
        self.reporter.message(f"Upgraded {name} to {release.version}")

    # Remove

    def remove_single(self, name: str, *, purge: bool = False) -> None:
        pkg = self.registry.require(name)
        if not pkg.is_installed or pkg.exec_path is None or pkg.install_path is None:
            raise InvalidState(f"{name} is not installed", package=name, stage="remove")

        install_path = pkg.install_path
        with _stage(name, "remove"):
            # The links directory stays on PATH while another installed package uses it.
            if not any(p.is_installed for p in self.registry if p.name != name):
                self.integration.remove_from_path(self.paths.symlinks_dir)
            self.integration.remove_link(name)
            if install_path.is_symlink() or install_path.is_file():
                install_path.unlink()
            elif install_path.is_dir():
                shutil.rmtree(install_path)
            else:
                raise InvalidState(f"Install path {install_path} is neither a file nor a directory")
            self.integration.remove_desktop_entry(name)
            if pkg.icon_path is not None:
                self.integration.remove_icon(pkg.icon_path)

        pkg.clear_install()
        if purge:
            self.registry.remove(name)
        with _stage(name, "register"):
            self.store.save(self.registry)
        self.reporter.message(f"Removed {name}")

    def remove(self, names: list[str], *, purge: bool = False) -> BulkReport:
        report = BulkReport()
        total = len(names)
        for done, name in enumerate(names, start=1):
            self.reporter.message(f"Removing {name}")
            try:
                self.remove_single(name, purge=purge)
                report.succeeded.append(name)
            except CorruptStore:
                raise
            except UpstreamError as e:
                report.failed.append((name, str(e)))
                self.reporter.message(f"Failed to remove {name}: {e}")
            self.reporter.progress(done, total)
        return report
