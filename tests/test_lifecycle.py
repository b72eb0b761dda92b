import gzip
import hashlib
import io
import os
import shutil
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from upstream.classify import Arch, Filetype, HostPlatform, TargetOS
from upstream.errors import (
    ChecksumMismatch,
    CorruptStore,
    ExtractionFailed,
    FilesystemError,
    InvalidState,
    NetworkError,
    NoMatchingAsset,
    NotFound,
    UpstreamError,
)
from upstream.integration import SystemIntegration, path_export_line
from upstream.lifecycle import LifecycleEngine
from upstream.models import Asset, Package, PackageReference, Release
from upstream.paths import UpstreamPaths
from upstream.progress import CallbackReporter
from upstream.registry import RegistryStore
from upstream.version import Version

LINUX_X64 = HostPlatform(TargetOS.LINUX, Arch.X86_64)


def tarball(files: dict[str, tuple[bytes, int]]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, (data, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def tool_tarball(name: str, version: str) -> bytes:
    return tarball(
        {
            f"{name}-{version}/bin/{name}": (f"#!/bin/sh\necho {name} {version}\n".encode(), 0o755),
            f"{name}-{version}/README": (f"{name} {version}".encode(), 0o644),
        }
    )


class FakeProvider:
    def __init__(self) -> None:
        self.releases: dict[str, Release] = {}
        self.blobs: dict[str, bytes] = {}
        self.fetch_errors: dict[str, UpstreamError] = {}
        self.downloaded: list[str] = []

    def publish(self, package: str, tag: str, files: dict[str, bytes]) -> Release:
        assets = []
        for i, (asset_name, data) in enumerate(files.items()):
            url = f"https://example.com/{package}/{tag}/{asset_name}"
            self.blobs[url] = data
            assets.append(Asset(id=i, name=asset_name, download_url=url, size=len(data)))
        release = Release(
            id=len(self.releases) + 1,
            tag=tag,
            name=tag,
            body="",
            is_draft=False,
            is_prerelease=False,
            assets=tuple(assets),
            version=Version.from_tag(tag),
        )
        self.releases[package] = release
        return release

    async def latest_release(self, package: Package) -> Release:
        if package.name in self.fetch_errors:
            raise self.fetch_errors[package.name]
        try:
            return self.releases[package.name]
        except KeyError:
            raise NotFound(f"no releases for {package.repo_slug}") from None

    async def download_asset(self, package, asset, dest, on_progress=None):
        data = self.blobs[asset.download_url]
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        self.downloaded.append(asset.name)
        if on_progress is not None:
            on_progress(len(data), len(data))
        return dest


def ref(name: str, filetype: Filetype = Filetype.ARCHIVE, **kw) -> PackageReference:
    return PackageReference(name=name, repo_slug=f"owner/{name}", filetype=filetype, **kw)


def snapshot(root: Path) -> dict[str, bytes]:
    return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class LifecycleTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.paths = UpstreamPaths.from_root(self.root)
        self.paths.ensure()
        self.provider = FakeProvider()
        self.messages: list[str] = []
        self.ticks: list[tuple[int, int]] = []
        self.engine = self.make_engine()

    def tearDown(self) -> None:
        self._td.cleanup()

    def make_engine(self, **kw) -> LifecycleEngine:
        return LifecycleEngine(
            paths=self.paths,
            store=RegistryStore(self.paths.packages_file),
            providers=self.provider,
            integration=SystemIntegration(self.paths, LINUX_X64),
            host=LINUX_X64,
            reporter=CallbackReporter(
                on_message=self.messages.append,
                on_progress=lambda done, total: self.ticks.append((done, total)),
            ),
            **kw,
        )

    def stored(self, name: str) -> Package | None:
        return RegistryStore(self.paths.packages_file).load().get(name)

    def path_lines(self) -> list[str]:
        if not self.paths.paths_file.exists():
            return []
        return [ln for ln in self.paths.paths_file.read_text(encoding="utf-8").splitlines() if ln.startswith("export")]

    def links_line(self) -> str:
        return path_export_line(self.paths.symlinks_dir)

    def assert_scratch_clean(self) -> None:
        self.assertEqual(list(self.paths.cache_dir.iterdir()), [])

    async def install_tool(self, name: str = "tool", version: str = "1.2.3") -> Package:
        self.provider.publish(name, f"v{version}", {f"{name}-v{version}-linux-x86_64.tar.gz": tool_tarball(name, version)})
        return await self.engine.install(ref(name))


class TestInstall(LifecycleTestCase):
    async def test_archive_install_end_to_end(self) -> None:
        self.provider.publish(
            "tool",
            "v1.2.3",
            {
                "tool-v1.2.3-darwin-arm64.tar.gz": b"not for us",
                "tool-v1.2.3-linux-x86_64.tar.gz": tool_tarball("tool", "1.2.3"),
            },
        )
        pkg = await self.engine.install(ref("tool"))

        install_dir = self.paths.binaries_dir / "tool"
        exec_path = install_dir / "bin" / "tool"
        self.assertEqual(pkg.version, Version(1, 2, 3))
        self.assertEqual(pkg.install_path, install_dir)
        self.assertEqual(pkg.exec_path, exec_path)
        self.assertTrue(os.access(exec_path, os.X_OK))
        self.assertEqual(self.provider.downloaded, ["tool-v1.2.3-linux-x86_64.tar.gz"])

        link = self.paths.symlinks_dir / "tool"
        self.assertEqual(Path(os.readlink(link)), exec_path)
        self.assertEqual(self.path_lines(), [self.links_line()])

        stored = self.stored("tool")
        self.assertIsNotNone(stored)
        self.assertEqual(stored.version, Version(1, 2, 3))
        self.assertEqual(stored.exec_path, exec_path)
        self.assert_scratch_clean()
        self.assertIn("Installed tool 1.2.3", self.messages)
        self.assertIn((len(tool_tarball("tool", "1.2.3")), len(tool_tarball("tool", "1.2.3"))), self.ticks)

    async def test_binary_install(self) -> None:
        self.provider.publish("tool", "v0.3.0", {"tool-linux-amd64": b"\x7fELF"})
        pkg = await self.engine.install(ref("tool", Filetype.BINARY))
        self.assertEqual(pkg.exec_path, self.paths.binaries_dir / "tool" / "tool-linux-amd64")
        self.assertTrue(os.access(pkg.exec_path, os.X_OK))
        # The shell reaches the tool by its package name, not the asset name.
        self.assertEqual(self.path_lines(), [self.links_line()])
        self.assertEqual((self.paths.symlinks_dir / "tool").resolve(), pkg.exec_path.resolve())

    async def test_compressed_install(self) -> None:
        self.provider.publish("tool", "v0.3.0", {"tool-linux-amd64.gz": gzip.compress(b"\x7fELF")})
        pkg = await self.engine.install(ref("tool", Filetype.COMPRESSED))
        self.assertEqual(pkg.exec_path, self.paths.binaries_dir / "tool" / "tool-linux-amd64")
        self.assertEqual(pkg.exec_path.read_bytes(), b"\x7fELF")

    async def test_already_installed(self) -> None:
        await self.install_tool()
        with self.assertRaises(InvalidState):
            await self.engine.install(ref("tool"))
        with self.assertRaises(InvalidState):
            await self.engine.install("tool")

    async def test_packages_share_one_path_line(self) -> None:
        await self.install_tool("alpha", "1.0.0")
        await self.install_tool("beta", "1.0.0")
        self.assertEqual(self.path_lines(), [self.links_line()])
        for name in ("alpha", "beta"):
            link = self.paths.symlinks_dir / name
            self.assertEqual(link.resolve(), self.engine.registry.require(name).exec_path.resolve())

        self.engine.remove_single("alpha")
        self.assertEqual(self.path_lines(), [self.links_line()])
        self.assertTrue((self.paths.symlinks_dir / "beta").is_symlink())

        self.engine.remove_single("beta")
        self.assertEqual(self.path_lines(), [])

    async def test_reinstall_by_name_rolls_back_when_save_fails(self) -> None:
        await self.install_tool()
        self.engine.remove_single("tool")
        registry_before = self.paths.packages_file.read_bytes()

        with patch.object(self.engine.store, "save", side_effect=FilesystemError("disk full")):
            with self.assertRaises(FilesystemError) as ctx:
                await self.engine.install("tool")
        self.assertEqual(ctx.exception.stage, "register")

        pkg = self.engine.registry.require("tool")
        self.assertFalse(pkg.is_installed)
        self.assertIsNone(pkg.exec_path)
        self.assertEqual(pkg.version, Version(1, 2, 3))
        self.assertFalse((self.paths.binaries_dir / "tool").exists())
        self.assertFalse((self.paths.symlinks_dir / "tool").is_symlink())
        self.assertEqual(self.paths.packages_file.read_bytes(), registry_before)

        installed = await self.engine.install("tool")
        self.assertTrue(installed.is_installed)
        self.assertIs(self.engine.registry.require("tool"), installed)

    async def test_no_matching_asset_leaves_no_residue(self) -> None:
        self.provider.publish("tool", "v1.0.0", {"Tool-1.0.0-x86_64.AppImage": b"elf"})
        with self.assertRaises(NoMatchingAsset) as ctx:
            await self.engine.install(ref("tool"))
        self.assertEqual(ctx.exception.package, "tool")
        self.assertIsNone(self.engine.registry.get("tool"))
        self.assertFalse(self.paths.packages_file.exists())
        self.assertEqual(list(self.paths.binaries_dir.iterdir()), [])

    async def test_checksum_mismatch_aborts_without_residue(self) -> None:
        self.provider.publish(
            "tool",
            "v1.2.3",
            {
                "tool-v1.2.3-linux-x86_64.tar.gz": tool_tarball("tool", "1.2.3"),
                "checksums.txt": f"{'0' * 64}  tool-v1.2.3-linux-x86_64.tar.gz\n".encode(),
            },
        )
        with self.assertRaises(ChecksumMismatch) as ctx:
            await self.engine.install(ref("tool"))
        self.assertEqual(ctx.exception.stage, "verify")
        self.assertFalse((self.paths.binaries_dir / "tool").exists())
        self.assertFalse((self.paths.symlinks_dir / "tool").is_symlink())
        self.assertEqual(self.path_lines(), [])
        self.assertIsNone(self.engine.registry.get("tool"))
        self.assert_scratch_clean()

    async def test_checksum_match_and_opt_out(self) -> None:
        blob = tool_tarball("tool", "1.2.3")
        self.provider.publish(
            "tool",
            "v1.2.3",
            {
                "tool-v1.2.3-linux-x86_64.tar.gz": blob,
                "tool-v1.2.3-linux-x86_64.tar.gz.sha256": hashlib.sha256(blob).hexdigest().encode(),
            },
        )
        await self.engine.install(ref("tool"))
        self.assertIn("tool-v1.2.3-linux-x86_64.tar.gz.sha256", self.provider.downloaded)

        self.provider.publish(
            "other",
            "v1.0.0",
            {
                "other-v1.0.0-linux-x86_64.tar.gz": tool_tarball("other", "1.0.0"),
                "checksums.txt": f"{'0' * 64}  other-v1.0.0-linux-x86_64.tar.gz\n".encode(),
            },
        )
        unverified = self.make_engine(verify_checksums=False)
        pkg = await unverified.install(ref("other"))
        self.assertTrue(pkg.is_installed)

    async def test_missing_executable_cleans_placed_files(self) -> None:
        self.provider.publish(
            "tool",
            "v1.0.0",
            {"tool-v1.0.0-linux-x86_64.tar.gz": tarball({"tool-1.0.0/README": (b"docs", 0o644)})},
        )
        with self.assertRaises(ExtractionFailed) as ctx:
            await self.engine.install(ref("tool"))
        self.assertEqual(ctx.exception.package, "tool")
        self.assertFalse((self.paths.binaries_dir / "tool").exists())
        self.assertEqual(self.path_lines(), [])
        self.assert_scratch_clean()

    async def test_leftover_target_is_not_overwritten(self) -> None:
        leftover = self.paths.binaries_dir / "tool"
        leftover.mkdir()
        (leftover / "keep").write_text("mine", encoding="utf-8")
        self.provider.publish("tool", "v1.0.0", {"tool-linux-amd64": b"bin"})
        with self.assertRaises(InvalidState):
            await self.engine.install(ref("tool", Filetype.BINARY))
        self.assertEqual((leftover / "keep").read_text(encoding="utf-8"), "mine")

    async def test_checksum_asset_is_not_installable(self) -> None:
        self.provider.publish("tool", "v1.0.0", {"checksums.txt": b"x"})
        with self.assertRaises(InvalidState):
            await self.engine.install(ref("tool", Filetype.CHECKSUM))

    @unittest.skipIf(os.name == "nt", "needs a POSIX shell")
    async def test_appimage_install_with_desktop_entry(self) -> None:
        script = (
            "#!/bin/sh\n"
            'if [ "$1" = "--appimage-extract" ]; then\n'
            "  mkdir -p squashfs-root\n"
            "  printf '#!/bin/sh\\necho tool\\n' > squashfs-root/AppRun\n"
            "  printf 'PNG' > squashfs-root/tool.png\n"
            "  ln -s tool.png squashfs-root/.DirIcon\n"
            "fi\n"
        )
        self.provider.publish("tool", "v2.0.0", {"Tool-2.0.0-x86_64.AppImage": script.encode()})
        pkg = await self.engine.install(ref("tool", Filetype.APPIMAGE), desktop_entry=True)

        install_dir = self.paths.appimages_dir / "tool"
        self.assertEqual(pkg.install_path, install_dir)
        self.assertEqual(pkg.exec_path, install_dir / "AppRun")
        self.assertEqual(pkg.icon_path, self.paths.icons_dir / "tool.png")
        self.assertEqual(pkg.icon_path.read_bytes(), b"PNG")
        entry = (self.paths.applications_dir / "tool.desktop").read_text(encoding="utf-8")
        self.assertIn(f'Exec="{install_dir / "AppRun"}" %U', entry)
        self.assertEqual((self.paths.symlinks_dir / "tool").resolve(), (install_dir / "AppRun").resolve())
        self.assertEqual(self.path_lines(), [self.links_line()])

        self.engine.remove_single("tool")
        self.assertFalse((self.paths.applications_dir / "tool.desktop").exists())
        self.assertFalse((self.paths.icons_dir / "tool.png").exists())
        self.assertFalse(install_dir.exists())


class TestUpgrade(LifecycleTestCase):
    async def test_upgrade_replaces_install(self) -> None:
        await self.install_tool(version="1.2.3")
        self.provider.publish("tool", "v2.0.0", {"tool-v2.0.0-linux-x86_64.tar.gz": tool_tarball("tool", "2.0.0")})

        self.assertTrue(await self.engine.upgrade_single("tool"))
        pkg = self.engine.registry.require("tool")
        self.assertEqual(pkg.version, Version(2, 0, 0))
        self.assertIn(b"2.0.0", pkg.exec_path.read_bytes())
        self.assertFalse((self.paths.binaries_dir / "tool.old").exists())
        self.assertEqual(Path(os.readlink(self.paths.symlinks_dir / "tool")), pkg.exec_path)
        self.assertEqual(len(self.path_lines()), 1)
        self.assertEqual(self.stored("tool").version, Version(2, 0, 0))

    async def test_up_to_date_and_force(self) -> None:
        await self.install_tool(version="1.2.3")
        self.assertFalse(await self.engine.upgrade_single("tool"))
        self.assertEqual(self.provider.downloaded, ["tool-v1.2.3-linux-x86_64.tar.gz"])
        self.assertTrue(await self.engine.upgrade_single("tool", force=True))
        self.assertEqual(len(self.provider.downloaded), 2)

    async def test_failed_upgrade_restores_previous_install(self) -> None:
        await self.install_tool(version="1.2.3")
        install_dir = self.paths.binaries_dir / "tool"
        before = snapshot(install_dir)
        registry_before = self.paths.packages_file.read_bytes()

        self.provider.publish("tool", "v2.0.0", {"tool-v2.0.0-linux-x86_64.tar.gz": b"corrupt"})
        with self.assertRaises(ExtractionFailed) as ctx:
            await self.engine.upgrade_single("tool")
        self.assertEqual(ctx.exception.package, "tool")

        self.assertEqual(snapshot(install_dir), before)
        self.assertFalse((self.paths.binaries_dir / "tool.old").exists())
        self.assertEqual(Path(os.readlink(self.paths.symlinks_dir / "tool")), install_dir / "bin" / "tool")
        self.assertEqual(self.paths.packages_file.read_bytes(), registry_before)
        self.assertEqual(self.engine.registry.require("tool").version, Version(1, 2, 3))
        self.assert_scratch_clean()

    async def test_stale_backup_is_replaced(self) -> None:
        await self.install_tool(version="1.0.0")
        stale = self.paths.binaries_dir / "tool.old"
        stale.mkdir()
        (stale / "junk").write_text("old", encoding="utf-8")
        self.provider.publish("tool", "v1.1.0", {"tool-v1.1.0-linux-x86_64.tar.gz": tool_tarball("tool", "1.1.0")})
        self.assertTrue(await self.engine.upgrade_single("tool"))
        self.assertFalse(stale.exists())

    async def test_pinned_and_not_installed(self) -> None:
        await self.install_tool(version="1.0.0")
        self.engine.set_pinned("tool", True)
        self.provider.publish("tool", "v9.0.0", {"tool-v9.0.0-linux-x86_64.tar.gz": tool_tarball("tool", "9.0.0")})
        self.assertFalse(await self.engine.upgrade_single("tool", force=True))
        self.assertTrue(self.stored("tool").is_pinned)

        self.engine.set_pinned("tool", False)
        self.engine.remove_single("tool")
        with self.assertRaises(InvalidState):
            await self.engine.upgrade_single("tool")

    async def test_bulk_upgrade_isolates_failures(self) -> None:
        for name in ("alpha", "beta", "gamma"):
            await self.install_tool(name, "1.0.0")
        self.engine.set_pinned("gamma", True)
        for name in ("alpha", "beta", "gamma"):
            self.provider.publish(name, "v1.1.0", {f"{name}-v1.1.0-linux-x86_64.tar.gz": tool_tarball(name, "1.1.0")})
        self.provider.fetch_errors["alpha"] = NetworkError("connection reset")
        self.ticks.clear()

        report = await self.engine.upgrade()
        self.assertEqual([name for name, _ in report.failed], ["alpha"])
        self.assertIn("alpha (fetch): connection reset", report.failed[0][1])
        self.assertEqual(report.upgraded, ["beta"])
        self.assertEqual(report.skipped, ["gamma"])
        self.assertFalse(report.ok)
        self.assertEqual(self.ticks[-1], (3, 3))

        self.assertEqual(self.stored("alpha").version, Version(1, 0, 0))
        self.assertEqual(self.stored("beta").version, Version(1, 1, 0))
        self.assertEqual(self.stored("gamma").version, Version(1, 0, 0))

    async def test_check_only_reports_without_mutation(self) -> None:
        await self.install_tool("alpha", "1.0.0")
        await self.install_tool("beta", "2.0.0")
        self.provider.publish("alpha", "v1.5.0", {"alpha-v1.5.0-linux-x86_64.tar.gz": tool_tarball("alpha", "1.5.0")})
        registry_before = self.paths.packages_file.read_bytes()

        available = await self.engine.check_updates()
        self.assertEqual(available, [("alpha", Version(1, 0, 0), Version(1, 5, 0))])
        self.assertEqual(self.paths.packages_file.read_bytes(), registry_before)
        self.assertEqual(len(self.provider.downloaded), 2)

    async def test_unknown_name_in_bulk_is_reported(self) -> None:
        report = await self.engine.upgrade(["ghost"])
        self.assertEqual(report.failed[0][0], "ghost")


class TestRemove(LifecycleTestCase):
    async def test_remove_keeps_entry_unless_purged(self) -> None:
        pkg = await self.install_tool()
        install_dir = pkg.install_path

        self.engine.remove_single("tool")
        self.assertFalse(install_dir.exists())
        self.assertFalse((self.paths.symlinks_dir / "tool").is_symlink())
        self.assertEqual(self.path_lines(), [])
        stored = self.stored("tool")
        self.assertIsNotNone(stored)
        self.assertIsNone(stored.install_path)
        self.assertIsNone(stored.exec_path)
        self.assertEqual(stored.version, Version(1, 2, 3))

        with self.assertRaises(InvalidState):
            self.engine.remove_single("tool")

        await self.engine.install("tool")
        self.engine.remove_single("tool", purge=True)
        self.assertIsNone(self.stored("tool"))
        with self.assertRaises(NotFound):
            self.engine.remove_single("tool")

    async def test_missing_install_path(self) -> None:
        pkg = await self.install_tool()
        shutil.rmtree(pkg.install_path)
        with self.assertRaises(InvalidState):
            self.engine.remove_single("tool")

    async def test_bulk_remove_order_and_isolation(self) -> None:
        await self.install_tool("alpha", "1.0.0")
        await self.install_tool("beta", "1.0.0")
        self.messages.clear()
        self.ticks.clear()

        report = self.engine.remove(["alpha", "ghost", "beta"], purge=True)
        self.assertEqual(report.succeeded, ["alpha", "beta"])
        self.assertEqual([name for name, _ in report.failed], ["ghost"])
        self.assertEqual(self.ticks, [(1, 3), (2, 3), (3, 3)])
        self.assertEqual(self.messages[0], "Removing alpha")
        self.assertEqual(self.messages[1], "Removed alpha")
        self.assertEqual(self.messages[2], "Removing ghost")
        self.assertTrue(self.messages[3].startswith("Failed to remove ghost"))
        self.assertEqual(self.messages[4:], ["Removing beta", "Removed beta"])
        self.assertEqual(len(self.engine.registry), 0)


class TestRegistryLoading(LifecycleTestCase):
    async def test_corrupt_registry_aborts(self) -> None:
        self.paths.packages_file.write_text("{broken", encoding="utf-8")
        with self.assertRaises(CorruptStore):
            self.make_engine()
        self.assertEqual(self.paths.packages_file.read_text(encoding="utf-8"), "{broken")

    async def test_state_survives_new_engine(self) -> None:
        await self.install_tool()
        fresh = self.make_engine()
        self.assertEqual([p.name for p in fresh.packages()], ["tool"])
        self.assertTrue(fresh.packages()[0].is_installed)
