from __future__ import annotations

import logging

from .classify import Arch, HostPlatform, TargetOS
from .errors import NoMatchingAsset
from .models import Asset, PackageReference, Release

logger = logging.getLogger(__name__)


def platform_rank(asset: Asset, host: HostPlatform) -> int:
    """
    0: built for the host OS and arch.
    1: host OS, arch not stated.
    2: neither OS nor a conflicting arch stated (portable or unlabeled).
    3: anything else.
    """
    if asset.target_os == host.os:
        if asset.target_arch == host.arch:
            return 0
        if asset.target_arch == Arch.UNKNOWN:
            return 1
        return 3
    if asset.target_os == TargetOS.UNKNOWN and asset.target_arch in (Arch.UNKNOWN, host.arch):
        return 2
    return 3


def candidate_assets(release: Release, reference: PackageReference) -> list[Asset]:
    match = reference.match_pattern.lower() if reference.match_pattern else None
    exclude = reference.exclude_pattern.lower() if reference.exclude_pattern else None
    out: list[Asset] = []
    for asset in release.assets:
        if asset.filetype != reference.filetype:
            continue
        lowered = asset.name.lower()
        if match is not None and match not in lowered:
            continue
        if exclude is not None and exclude in lowered:
            continue
        out.append(asset)
    return out


def rank_assets(release: Release, reference: PackageReference, host: HostPlatform) -> list[Asset]:
    # sorted() is stable, so equal ranks keep release order.
    return sorted(candidate_assets(release, reference), key=lambda a: platform_rank(a, host))


def select_asset(release: Release, reference: PackageReference, host: HostPlatform) -> Asset:
    ranked = rank_assets(release, reference, host)
    if not ranked:
        raise NoMatchingAsset(
            f"No {reference.filetype.value} asset in release {release.tag or release.name!r} matches",
            package=reference.name,
            stage="select",
        )
    logger.debug("ranked assets for %s: %s", reference.name, [a.name for a in ranked])
    return ranked[0]
