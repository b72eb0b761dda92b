from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from typing import Any

from ._version import __version__
from .client import HttpClient
from .config import config_path, load_config, redact_token
from .errors import UpstreamError
from .lifecycle import LifecycleEngine
from .models import Channel, Filetype, PackageReference, Provider
from .paths import UpstreamPaths
from .progress import CallbackReporter
from .providers import ProviderManager
from .registry import RegistryStore

logger = logging.getLogger(__name__)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="upstream",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and upgrade software from GitHub, GitLab, Gitea releases and direct URLs.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              UPSTREAM_CONFIG_PATH, GITHUB_TOKEN, GITLAB_TOKEN, GITEA_TOKEN
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"upstream {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--data-dir", help="Override the data directory (installs, registry, PATH file)")
    p.add_argument("--no-verify", action="store_true", help="Skip checksum verification")

    sub = p.add_subparsers(dest="cmd", required=True)

    inst = sub.add_parser("install", help="Install a package from its latest release")
    inst.add_argument("name", help="Local package name (also the link name)")
    inst.add_argument("repo", help="owner/repo slug, or the URL for --provider direct")
    inst.add_argument("-k", "--kind", required=True, choices=[f.value for f in Filetype], help="Asset filetype")
    inst.add_argument("-p", "--provider", default=Provider.GITHUB.value, choices=[x.value for x in Provider])
    inst.add_argument("-c", "--channel", default=Channel.STABLE.value, choices=[c.value for c in Channel])
    inst.add_argument("--match", dest="match_pattern", help="Asset name must contain this text")
    inst.add_argument("--exclude", dest="exclude_pattern", help="Asset name must not contain this text")
    inst.add_argument("--base-url", help="Self-hosted provider base URL")
    inst.add_argument("--desktop", action="store_true", help="Create a desktop entry")

    upg = sub.add_parser("upgrade", help="Upgrade installed packages")
    upg.add_argument("names", nargs="*", help="Packages to upgrade (default: all)")
    upg.add_argument("--force", action="store_true", help="Reinstall even when up to date")
    upg.add_argument("--check", action="store_true", help="Only report available upgrades")

    rm = sub.add_parser("remove", aliases=["rm"], help="Remove installed packages")
    rm.add_argument("names", nargs="+")
    rm.add_argument("--purge", action="store_true", help="Also forget the package")

    ls = sub.add_parser("list", aliases=["ls"], help="List tracked packages")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    pin = sub.add_parser("pin", help="Exclude a package from upgrades")
    pin.add_argument("name")
    unpin = sub.add_parser("unpin", help="Include a pinned package in upgrades again")
    unpin.add_argument("name")

    cfg = sub.add_parser("config", help="Inspect local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (tokens redacted)")

    return p


def build_engine(args: argparse.Namespace, http: HttpClient) -> LifecycleEngine:
    cfg = load_config().with_env_tokens()
    paths = UpstreamPaths.default(args.data_dir or cfg.data_dir)
    paths.ensure()
    return LifecycleEngine(
        paths=paths,
        store=RegistryStore(paths.packages_file),
        providers=ProviderManager(http, cfg),
        reporter=CallbackReporter(on_message=print),
        verify_checksums=cfg.verify_checksums and not args.no_verify,
    )


async def cmd_install(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    ref = PackageReference(
        name=args.name,
        repo_slug=args.repo,
        filetype=Filetype(args.kind),
        channel=Channel(args.channel),
        provider=Provider(args.provider),
        base_url=args.base_url,
        match_pattern=args.match_pattern,
        exclude_pattern=args.exclude_pattern,
    )
    pkg = await engine.install(ref, desktop_entry=args.desktop)
    print(f"exec: {pkg.exec_path}")
    return 0


async def cmd_upgrade(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    report = await engine.upgrade(args.names or None, force=args.force, check_only=args.check)
    if args.check:
        if not report.available:
            print("All packages are up to date.")
        else:
            rows = [["NAME", "CURRENT", "LATEST"]]
            rows.extend([name, str(cur), str(latest)] for name, cur, latest in report.available)
            _print_table(rows)
    else:
        print(f"upgraded: {len(report.upgraded)}  up to date: {len(report.up_to_date)}  failed: {len(report.failed)}")
    for name, message in report.failed:
        print(f"error: {message}", file=sys.stderr)
    return 0 if report.ok else 1


def cmd_remove(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    report = engine.remove(args.names, purge=args.purge)
    for name, message in report.failed:
        print(f"error: {message}", file=sys.stderr)
    return 0 if report.ok else 1


def cmd_list(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    packages = engine.packages()
    if args.json:
        print(json.dumps([p.to_dict() for p in packages], indent=2, sort_keys=True))
        return 0
    if not packages:
        print("No packages tracked.")
        return 0
    rows = [["NAME", "VERSION", "PROVIDER", "REPO", "CHANNEL", "STATE"]]
    for p in packages:
        state = "installed" if p.is_installed else "removed"
        if p.is_pinned:
            state += " (pinned)"
        rows.append([p.name, str(p.version), p.provider.value, p.repo_slug, p.channel.value, state])
    _print_table(rows)
    return 0


def cmd_pin(engine: LifecycleEngine, args: argparse.Namespace) -> int:
    pinned = args.cmd == "pin"
    pkg = engine.set_pinned(args.name, pinned)
    print(f"{pkg.name}: {'pinned' if pinned else 'unpinned'}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    cfg = load_config()
    d: dict[str, Any] = cfg.__dict__.copy()
    for key in ("github_token", "gitlab_token", "gitea_token"):
        d[key] = redact_token(d[key])
    print(json.dumps(d, indent=2, sort_keys=True))
    return 0


async def _run(args: argparse.Namespace) -> int:
    async with HttpClient(timeout_s=load_config().timeout_s) as http:
        engine = build_engine(args, http)
        if args.cmd == "install":
            return await cmd_install(engine, args)
        if args.cmd == "upgrade":
            return await cmd_upgrade(engine, args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(engine, args)
        if args.cmd in ("list", "ls"):
            return cmd_list(engine, args)
        if args.cmd in ("pin", "unpin"):
            return cmd_pin(engine, args)
    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        return asyncio.run(_run(args))
    except UpstreamError as e:
        logger.debug("%s failed", args.cmd, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
