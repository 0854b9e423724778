from __future__ import annotations

from typing import Optional


def version_with_prerelease(version: str, prerelease: Optional[str]) -> str:
    pre = str(prerelease or "").strip()
    return f"{version}-{pre}" if pre else version


def replace_path_tokens(text: str, module_name: str, version: str, prerelease: Optional[str] = None) -> str:
    """Substitute ``<ModuleName>``-style tokens used in artefact paths and tag names.

    Supported tokens:
      - <ModuleName>
      - <ModuleVersion>
      - <ModuleVersionWithPreRelease>
      - <TagName> (v<ModuleVersion>)
      - <TagModuleVersionWithPreRelease> (v<ModuleVersionWithPreRelease>)
    """
    full = version_with_prerelease(version, prerelease)
    out = str(text or "")
    out = out.replace("<TagModuleVersionWithPreRelease>", "v" + full)
    out = out.replace("<ModuleVersionWithPreRelease>", full)
    out = out.replace("<ModuleVersion>", version)
    out = out.replace("<ModuleName>", module_name)
    out = out.replace("<TagName>", "v" + version)
    return out
