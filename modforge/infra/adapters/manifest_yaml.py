from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from ...utils.yamlio import read_yaml, write_yaml
from ..errors import NotFoundError
from ..models import ManifestMetadata, ModuleDependency

MANIFEST_FILE = "module.yml"


def dependency_to_manifest(dep: ModuleDependency) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": dep.name}
    if dep.required_version:
        out["requiredVersion"] = dep.required_version
    if dep.minimum_version:
        out["moduleVersion"] = dep.minimum_version
    if dep.maximum_version:
        out["maximumVersion"] = dep.maximum_version
    if dep.guid:
        out["guid"] = dep.guid
    return out


def _dependency_from_manifest(raw: Any) -> ModuleDependency:
    if isinstance(raw, str):
        return ModuleDependency(name=raw.strip())
    return ModuleDependency(
        name=str(raw.get("name") or raw.get("moduleName") or "").strip(),
        minimum_version=raw.get("moduleVersion") or None,
        maximum_version=raw.get("maximumVersion") or None,
        required_version=raw.get("requiredVersion") or None,
        guid=raw.get("guid") or None,
    )


class YamlManifestEditor:
    """Key-value module manifest stored as ``module.yml`` in the module root.

    Keys are camelCase (``version``, ``prerelease``, ``requiredModules``,
    ``functionsToExport`` ...). ``write_metadata`` merges the patch into the
    existing document; a ``None`` value removes the key.
    """

    def manifest_path(self, module_root: Path, module_name: str) -> Path:
        return Path(module_root) / MANIFEST_FILE

    def read_metadata(self, path: Path) -> ManifestMetadata:
        if not path.exists():
            raise NotFoundError(f"manifest not found: {path}")
        data = read_yaml(path)
        if not isinstance(data, dict):
            data = {}
        required: List[ModuleDependency] = [_dependency_from_manifest(r) for r in (data.get("requiredModules") or [])]
        version = data.get("version")
        prerelease = data.get("prerelease")
        return ManifestMetadata(
            version=str(version).strip() if version is not None else None,
            prerelease=str(prerelease).strip() if prerelease else None,
            required_modules=tuple(d for d in required if d.name),
            functions_to_export=tuple(str(f) for f in (data.get("functionsToExport") or [])),
            values=dict(data),
        )

    def write_metadata(self, path: Path, patch: Dict[str, Any]) -> None:
        data: Dict[str, Any] = {}
        if path.exists():
            loaded = read_yaml(path)
            if isinstance(loaded, dict):
                data = loaded
        for key, value in patch.items():
            if value is None:
                data.pop(key, None)
                continue
            if isinstance(value, (list, tuple)):
                value = [dependency_to_manifest(v) if isinstance(v, ModuleDependency) else v for v in value]
            data[key] = value
        write_yaml(path, data)
