from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

from .errors import CorruptStore, FilesystemError, InvalidFormat, NotFound
from .models import Package

SCHEMA_VERSION = 1


class PackageRegistry:
    def __init__(self, packages: list[Package] | None = None) -> None:
        self._packages: dict[str, Package] = {}
        for pkg in packages or []:
            self.put(pkg)

    def get(self, name: str) -> Package | None:
        return self._packages.get(name)

    def require(self, name: str) -> Package:
        pkg = self._packages.get(name)
        if pkg is None:
            raise NotFound(f"Package {name!r} is not tracked", package=name)
        return pkg

    def put(self, pkg: Package) -> None:
        # Replacing keeps the original position.
        self._packages[pkg.name] = pkg

    def remove(self, name: str) -> Package | None:
        return self._packages.pop(name, None)

    def names(self) -> list[str]:
        return list(self._packages)

    def __contains__(self, name: object) -> bool:
        return name in self._packages

    def __iter__(self) -> Iterator[Package]:
        return iter(list(self._packages.values()))

    def __len__(self) -> int:
        return len(self._packages)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class RegistryStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> PackageRegistry:
        if not self.path.exists():
            return PackageRegistry()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="load registry") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStore(f"Registry file {self.path} is not valid JSON: {e}") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("packages"), list):
            raise CorruptStore(f"Registry file {self.path} has an unexpected shape")
        if raw.get("schema_version") != SCHEMA_VERSION:
            raise CorruptStore(f"Registry file {self.path} has unsupported schema_version {raw.get('schema_version')!r}")

        registry = PackageRegistry()
        for item in raw["packages"]:
            try:
                pkg = Package.from_dict(item)
            except InvalidFormat as e:
                raise CorruptStore(f"Registry file {self.path} has an invalid record: {e.message}") from e
            if pkg.name in registry:
                raise CorruptStore(f"Registry file {self.path} lists {pkg.name!r} twice")
            registry.put(pkg)
        return registry

    def save(self, registry: PackageRegistry) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "packages": [pkg.to_dict() for pkg in registry],
        }
        try:
            _write_json_atomic(self.path, payload)
        except OSError as e:
            raise FilesystemError.from_os_error(e, stage="save registry") from e
