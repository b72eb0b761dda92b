from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote, urlsplit

from .client import HttpClient, ProgressCallback
from .config import Config
from .errors import InvalidFormat, NotFound
from .models import MIN_INSTANT, Asset, Channel, Package, Provider, Release
from .version import ZERO, Version

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITLAB_BASE = "https://gitlab.com"
GITEA_BASE = "https://gitea.com"

PER_PAGE = 100
MAX_PAGES = 10


def _s(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _i(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return 0


def _b(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def _objects(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def parse_timestamp(text: str | None) -> datetime:
    if not text:
        return MIN_INSTANT
    raw = text.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return MIN_INSTANT
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_version(tag: str, assets: tuple[Asset, ...], *, is_prerelease: bool) -> Version:
    try:
        version = Version.from_tag(tag)
    except InvalidFormat:
        version = ZERO
        if assets:
            try:
                version = Version.from_filename(assets[0].name)
            except InvalidFormat:
                pass
    return version.as_prerelease(is_prerelease)


def newest_first(releases: list[Release]) -> list[Release]:
    # Stable, so equal timestamps keep the API's own order.
    return sorted(releases, key=lambda r: r.published_at, reverse=True)


def filter_channel(releases: list[Release], channel: Channel) -> list[Release]:
    if channel == Channel.STABLE:
        return [r for r in releases if not r.is_draft and not r.is_prerelease]
    if channel == Channel.BETA:
        return [r for r in releases if r.is_prerelease and not r.is_draft]
    if channel == Channel.NIGHTLY:
        return releases[:1]
    return list(releases)


# GitHub and Gitea share a release payload shape.


@dataclass(frozen=True)
class GitHubAssetDTO:
    id: int
    name: str
    browser_download_url: str
    size: int
    content_type: str
    created_at: str

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "GitHubAssetDTO":
        return cls(
            id=_i(obj.get("id")),
            name=_s(obj.get("name")),
            browser_download_url=_s(obj.get("browser_download_url")),
            size=_i(obj.get("size")),
            content_type=_s(obj.get("content_type")),
            created_at=_s(obj.get("created_at")),
        )


@dataclass(frozen=True)
class GitHubReleaseDTO:
    id: int
    tag_name: str
    name: str
    body: str
    prerelease: bool
    draft: bool
    published_at: str
    assets: tuple[GitHubAssetDTO, ...]

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "GitHubReleaseDTO":
        return cls(
            id=_i(obj.get("id")),
            tag_name=_s(obj.get("tag_name")),
            name=_s(obj.get("name")),
            body=_s(obj.get("body")),
            prerelease=_b(obj.get("prerelease")),
            draft=_b(obj.get("draft")),
            published_at=_s(obj.get("published_at")),
            assets=tuple(GitHubAssetDTO.from_json(a) for a in _objects(obj.get("assets"))),
        )


def _convert_github_like(dto: GitHubReleaseDTO) -> Release:
    assets = tuple(
        Asset(
            id=a.id,
            name=a.name,
            download_url=a.browser_download_url,
            size=a.size,
            created_at=parse_timestamp(a.created_at),
        )
        for a in dto.assets
    )
    return Release(
        id=dto.id,
        tag=dto.tag_name,
        name=dto.name,
        body=dto.body,
        is_draft=dto.draft,
        is_prerelease=dto.prerelease,
        assets=assets,
        version=resolve_version(dto.tag_name, assets, is_prerelease=dto.prerelease),
        published_at=parse_timestamp(dto.published_at),
    )


@dataclass(frozen=True)
class GitLabLinkDTO:
    id: int
    name: str
    url: str
    direct_asset_url: str
    link_type: str

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "GitLabLinkDTO":
        return cls(
            id=_i(obj.get("id")),
            name=_s(obj.get("name")),
            url=_s(obj.get("url")),
            direct_asset_url=_s(obj.get("direct_asset_url")),
            link_type=_s(obj.get("link_type")),
        )


@dataclass(frozen=True)
class GitLabSourceDTO:
    format: str
    url: str

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "GitLabSourceDTO":
        return cls(format=_s(obj.get("format")), url=_s(obj.get("url")))


@dataclass(frozen=True)
class GitLabReleaseDTO:
    tag_name: str
    name: str
    description: str
    created_at: str
    released_at: str
    upcoming_release: bool
    links: tuple[GitLabLinkDTO, ...]
    sources: tuple[GitLabSourceDTO, ...]

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "GitLabReleaseDTO":
        assets = obj.get("assets")
        if not isinstance(assets, dict):
            assets = {}
        return cls(
            tag_name=_s(obj.get("tag_name")),
            name=_s(obj.get("name")),
            description=_s(obj.get("description")),
            created_at=_s(obj.get("created_at")),
            released_at=_s(obj.get("released_at")),
            upcoming_release=_b(obj.get("upcoming_release")),
            links=tuple(GitLabLinkDTO.from_json(x) for x in _objects(assets.get("links"))),
            sources=tuple(GitLabSourceDTO.from_json(x) for x in _objects(assets.get("sources"))),
        )


class ReleaseSource(Protocol):
    async def fetch_releases(self, repo_slug: str, channel: Channel) -> list[Release]:
        ...

    def convert_release(self, dto: Any) -> Release:
        ...


class GitHubSource:
    def __init__(self, http: HttpClient, *, token: str | None = None, base_url: str | None = None) -> None:
        self.http = http
        self.token = token
        if base_url and base_url.rstrip("/") != GITHUB_API:
            # GitHub Enterprise serves the REST API under /api/v3.
            self.api_url = base_url.rstrip("/") + "/api/v3"
        else:
            self.api_url = GITHUB_API

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def convert_release(self, dto: GitHubReleaseDTO) -> Release:
        return _convert_github_like(dto)

    async def fetch_releases(self, repo_slug: str, channel: Channel) -> list[Release]:
        url = f"{self.api_url}/repos/{repo_slug.strip('/')}/releases"
        releases: list[Release] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self.http.get_json(url, params={"per_page": PER_PAGE, "page": page}, headers=self._headers())
            items = _objects(data)
            releases.extend(self.convert_release(GitHubReleaseDTO.from_json(x)) for x in items)
            if len(items) < PER_PAGE:
                break
        return filter_channel(newest_first(releases), channel)


class GitLabSource:
    def __init__(self, http: HttpClient, *, token: str | None = None, base_url: str | None = None) -> None:
        self.http = http
        self.token = token
        self.base_url = (base_url or GITLAB_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self.token} if self.token else {}

    def convert_release(self, dto: GitLabReleaseDTO) -> Release:
        assets: list[Asset] = []
        for link in dto.links:
            assets.append(Asset(id=link.id, name=link.name, download_url=link.direct_asset_url or link.url))
        for src in dto.sources:
            assets.append(Asset(id=0, name=f"source.{src.format}", download_url=src.url))
        frozen = tuple(assets)
        published = dto.released_at or dto.created_at
        return Release(
            id=0,
            tag=dto.tag_name,
            name=dto.name,
            body=dto.description,
            is_draft=False,
            is_prerelease=dto.upcoming_release,
            assets=frozen,
            version=resolve_version(dto.tag_name, frozen, is_prerelease=dto.upcoming_release),
            published_at=parse_timestamp(published),
        )

    async def fetch_releases(self, repo_slug: str, channel: Channel) -> list[Release]:
        project = quote(repo_slug.strip("/"), safe="")
        url = f"{self.base_url}/api/v4/projects/{project}/releases"
        releases: list[Release] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self.http.get_json(url, params={"per_page": PER_PAGE, "page": page}, headers=self._headers())
            items = _objects(data)
            releases.extend(self.convert_release(GitLabReleaseDTO.from_json(x)) for x in items)
            if len(items) < PER_PAGE:
                break
        return filter_channel(newest_first(releases), channel)


class GiteaSource:
    def __init__(self, http: HttpClient, *, token: str | None = None, base_url: str | None = None) -> None:
        self.http = http
        self.token = token
        self.base_url = (base_url or GITEA_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self.token}"} if self.token else {}

    def convert_release(self, dto: GitHubReleaseDTO) -> Release:
        return _convert_github_like(dto)

    async def fetch_releases(self, repo_slug: str, channel: Channel) -> list[Release]:
        url = f"{self.base_url}/api/v1/repos/{repo_slug.strip('/')}/releases"
        releases: list[Release] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self.http.get_json(url, params={"limit": PER_PAGE, "page": page}, headers=self._headers())
            items = _objects(data)
            releases.extend(self.convert_release(GitHubReleaseDTO.from_json(x)) for x in items)
            if len(items) < PER_PAGE:
                break
        return filter_channel(newest_first(releases), channel)


@dataclass(frozen=True)
class DirectProbeDTO:
    url: str
    file_name: str
    size: int
    last_modified: str
    etag: str


_CD_FILENAME_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)


def _file_name_from(url: str, content_disposition: str) -> str:
    if content_disposition:
        m = _CD_FILENAME_RE.search(content_disposition)
        if m:
            return unquote(m.group(1).strip())
    path = urlsplit(url).path
    name = unquote(path.rsplit("/", 1)[-1])
    return name or "download"


def _version_from_instant(dt: datetime) -> Version:
    midnight = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    seconds = int((dt - midnight).total_seconds())
    return Version(dt.year, dt.timetuple().tm_yday, seconds)


class DirectSource:
    """
    A bare URL treated as a release feed of exactly one release. The version comes
    from the file name when it carries one, else from Last-Modified.
    """

    def __init__(self, http: HttpClient) -> None:
        self.http = http

    def convert_release(self, dto: DirectProbeDTO) -> Release:
        asset = Asset(id=0, name=dto.file_name, download_url=dto.url, size=dto.size)
        modified = MIN_INSTANT
        if dto.last_modified:
            try:
                modified = parsedate_to_datetime(dto.last_modified).astimezone(timezone.utc)
            except (TypeError, ValueError):
                modified = MIN_INSTANT
        try:
            version = Version.from_filename(dto.file_name)
        except InvalidFormat:
            version = _version_from_instant(modified) if modified != MIN_INSTANT else ZERO
        return Release(
            id=0,
            tag="direct",
            name=dto.file_name,
            body=dto.etag,
            is_draft=False,
            is_prerelease=False,
            assets=(asset,),
            version=version,
            published_at=modified,
        )

    async def fetch_releases(self, repo_slug: str, channel: Channel) -> list[Release]:
        resp = await self.http.head(repo_slug)
        final_url = str(resp.url)
        dto = DirectProbeDTO(
            url=repo_slug,
            file_name=_file_name_from(final_url, resp.headers.get("content-disposition", "")),
            size=_i(resp.headers.get("content-length")),
            last_modified=resp.headers.get("last-modified", ""),
            etag=resp.headers.get("etag", ""),
        )
        return [self.convert_release(dto)]


class ProviderManager:
    def __init__(self, http: HttpClient, config: Config | None = None) -> None:
        self.http = http
        self.config = config or Config()
        self._sources: dict[tuple[Provider, str | None], ReleaseSource] = {}

    def source_for(self, provider: Provider, base_url: str | None = None) -> ReleaseSource:
        key = (provider, base_url)
        source = self._sources.get(key)
        if source is None:
            source = self._build(provider, base_url)
            self._sources[key] = source
        return source

    def _build(self, provider: Provider, base_url: str | None) -> ReleaseSource:
        if provider == Provider.GITHUB:
            return GitHubSource(self.http, token=self.config.github_token, base_url=base_url)
        if provider == Provider.GITLAB:
            return GitLabSource(self.http, token=self.config.gitlab_token, base_url=base_url)
        if provider == Provider.GITEA:
            return GiteaSource(self.http, token=self.config.gitea_token, base_url=base_url)
        return DirectSource(self.http)

    async def latest_release(self, package: Package) -> Release:
        source = self.source_for(package.provider, package.base_url)
        releases = await source.fetch_releases(package.repo_slug, package.channel)
        if not releases:
            raise NotFound(
                f"No {package.channel.value} release found for {package.repo_slug}",
                package=package.name,
                stage="fetch",
            )
        return releases[0]

    async def download_asset(
        self,
        package: Package,
        asset: Asset,
        dest: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        headers: dict[str, str] = {}
        if package.provider == Provider.GITHUB and self.config.github_token:
            headers["Authorization"] = f"Bearer {self.config.github_token}"
        elif package.provider == Provider.GITLAB and self.config.gitlab_token:
            headers["PRIVATE-TOKEN"] = self.config.gitlab_token
        elif package.provider == Provider.GITEA and self.config.gitea_token:
            headers["Authorization"] = f"token {self.config.gitea_token}"
        return await self.http.download(
            asset.download_url,
            dest,
            expected_size=asset.size,
            headers=headers,
            on_progress=on_progress,
        )
