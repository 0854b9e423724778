from __future__ import annotations

import os
from dataclasses import dataclass, fields as dc_fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema

from ..utils.yamlio import read_yaml
from .errors import ConfigurationError
from .models import (
    ARTEFACT_KIND_VALUES,
    ENCODING_VALUES,
    INSTALL_STRATEGY_VALUES,
    LEGACY_FLAT_HANDLING_VALUES,
    LINE_ENDING_VALUES,
    PUBLISH_DESTINATION_VALUES,
    PUBLISH_TOOL_VALUES,
    REQUIRED_MODULE_SOURCE_VALUES,
    SEGMENT_TYPE_VALUES,
    VALIDATION_SEVERITY_VALUES,
    ApprovedModuleSegment,
    ArtefactRequiredModules,
    ArtefactSegment,
    BuildDocumentationSegment,
    BuildSegment,
    BuildSpec,
    CommandSegment,
    CompatibilitySegment,
    CopyMapping,
    DocumentationSegment,
    ExternalModuleSegment,
    FileConsistencySegment,
    FormattingSegment,
    ImportModulesSegment,
    InstallSpec,
    ManifestSegment,
    ModuleDependency,
    ModuleSkipSegment,
    OptionsSegment,
    PipelineSpec,
    PlaceHolderSegment,
    PublishRepository,
    PublishSegment,
    RepositoryCredential,
    RequiredModuleSegment,
    Secret,
    Segment,
    SigningOptions,
    TestSegment,
    ValidationSegment,
)

SCHEMA_VERSION = 1

# Wire field tables: camelCase wire key -> (dataclass field, wire type).
# Wire types: "str", "bool", "int", "number", "strs" (string or list of strings),
# "secret" (string, `env:NAME` allowed), "credential", "mappings",
# ("enum", values), ("object", fields, cls).

_CREDENTIAL = "credential"

SIGNING_FIELDS: Dict[str, Tuple[str, Any]] = {
    "certificateThumbprint": ("certificate_thumbprint", "str"),
    "certificatePfxPath": ("certificate_pfx_path", "str"),
    "certificatePfxBase64": ("certificate_pfx_base64", "secret"),
    "certificatePfxPassword": ("certificate_pfx_password", "secret"),
    "timestampServer": ("timestamp_server", "str"),
    "include": ("include", "strs"),
    "excludePaths": ("exclude_paths", "strs"),
    "excludePatterns": ("exclude_patterns", "strs"),
    "includeInternals": ("include_internals", "bool"),
    "includeBinaries": ("include_binaries", "bool"),
    "includeExe": ("include_exe", "bool"),
    "overwriteSigned": ("overwrite_signed", "bool"),
    "failOnError": ("fail_on_error", "bool"),
    "timeoutSeconds": ("timeout_seconds", "int"),
}

DEPENDENCY_FIELDS: Dict[str, Tuple[str, Any]] = {
    "moduleName": ("name", "str"),
    "moduleVersion": ("minimum_version", "str"),
    "maximumVersion": ("maximum_version", "str"),
    "requiredVersion": ("required_version", "str"),
    "guid": ("guid", "str"),
}

ARTEFACT_REQUIRED_MODULES_FIELDS: Dict[str, Tuple[str, Any]] = {
    "enabled": ("enabled", "bool"),
    "modulesPath": ("modules_path", "str"),
    "source": ("source", ("enum", REQUIRED_MODULE_SOURCE_VALUES)),
    "repository": ("repository", "str"),
    "credential": ("credential", _CREDENTIAL),
}

REPOSITORY_FIELDS: Dict[str, Tuple[str, Any]] = {
    "name": ("name", "str"),
    "uri": ("uri", "str"),
    "sourceUri": ("source_uri", "str"),
    "publishUri": ("publish_uri", "str"),
    "trusted": ("trusted", "bool"),
    "priority": ("priority", "int"),
    "ensureRegistered": ("ensure_registered", "bool"),
    "unregisterAfterUse": ("unregister_after_use", "bool"),
    "credential": ("credential", _CREDENTIAL),
}

SEGMENT_FIELDS: Dict[str, Dict[str, Tuple[str, Any]]] = {
    "Manifest": {
        "moduleVersion": ("module_version", "str"),
        "prerelease": ("prerelease", "str"),
        "compatiblePSEditions": ("compatible_ps_editions", "strs"),
        "author": ("author", "str"),
        "companyName": ("company_name", "str"),
        "copyright": ("copyright", "str"),
        "description": ("description", "str"),
        "tags": ("tags", "strs"),
        "projectUri": ("project_uri", "str"),
        "licenseUri": ("license_uri", "str"),
        "iconUri": ("icon_uri", "str"),
        "releaseNotes": ("release_notes", "str"),
        "guid": ("guid", "str"),
    },
    "Build": {
        "merge": ("merge", "bool"),
        "mergeMissing": ("merge_missing", "bool"),
        "signMerged": ("sign_merged", "bool"),
        "refreshManifestOnly": ("refresh_manifest_only", "bool"),
        "localVersion": ("local_version", "bool"),
        "installMissingModules": ("install_missing_modules", "bool"),
        "installMissingModulesForce": ("install_missing_modules_force", "bool"),
        "installMissingModulesPrerelease": ("install_missing_modules_prerelease", "bool"),
        "installMissingModulesRepository": ("install_missing_modules_repository", "str"),
        "installMissingModulesCredential": ("install_missing_modules_credential", _CREDENTIAL),
        "failOnDependencyError": ("fail_on_dependency_error", "bool"),
        "failOnDeleteError": ("fail_on_delete_error", "bool"),
    },
    "Options": {
        "signing": ("signing", ("object", SIGNING_FIELDS, SigningOptions)),
    },
    "Documentation": {
        "path": ("path", "str"),
        "readmePath": ("readme_path", "str"),
    },
    "BuildDocumentation": {
        "enable": ("enable", "bool"),
        "startClean": ("start_clean", "bool"),
        "generateExternalHelp": ("generate_external_help", "bool"),
        "externalHelpCulture": ("external_help_culture", "str"),
    },
    "Formatting": {
        "enable": ("enable", "bool"),
        "updateProjectRoot": ("update_project_root", "bool"),
        "lineEnding": ("line_ending", ("enum", LINE_ENDING_VALUES)),
        "encoding": ("encoding", ("enum", ENCODING_VALUES)),
        "trimTrailingWhitespace": ("trim_trailing_whitespace", "bool"),
        "include": ("include", "strs"),
    },
    "RequiredModule": DEPENDENCY_FIELDS,
    "ExternalModule": DEPENDENCY_FIELDS,
    "ApprovedModule": DEPENDENCY_FIELDS,
    "Command": {
        "moduleName": ("module_name", "str"),
        "commandName": ("command_names", "strs"),
    },
    "PlaceHolder": {
        "find": ("find", "str"),
        "replace": ("replace", "str"),
    },
    "ModuleSkip": {
        "ignoreModuleName": ("ignore_module_names", "strs"),
        "ignoreFunctionName": ("ignore_function_names", "strs"),
        "force": ("force", "bool"),
        "failOnMissingCommands": ("fail_on_missing_commands", "bool"),
    },
    "Validation": {
        "enable": ("enable", "bool"),
        "severity": ("severity", ("enum", VALIDATION_SEVERITY_VALUES)),
        "checkManifestFields": ("check_manifest_fields", "bool"),
        "checkExports": ("check_exports", "bool"),
        "requiredManifestFields": ("required_manifest_fields", "strs"),
    },
    "FileConsistency": {
        "enable": ("enable", "bool"),
        "severity": ("severity", ("enum", VALIDATION_SEVERITY_VALUES)),
        "checkProjectRoot": ("check_project_root", "bool"),
        "maxInconsistencyPercentage": ("max_inconsistency_percentage", "number"),
        "requiredEncoding": ("required_encoding", ("enum", ENCODING_VALUES)),
        "requiredLineEnding": ("required_line_ending", ("enum", LINE_ENDING_VALUES)),
        "include": ("include", "strs"),
        "excludeDirectories": ("exclude_directories", "strs"),
    },
    "Compatibility": {
        "enable": ("enable", "bool"),
        "severity": ("severity", ("enum", VALIDATION_SEVERITY_VALUES)),
        "minimumCompatibilityPercentage": ("minimum_compatibility_percentage", "number"),
        "requireCrossCompatibility": ("require_cross_compatibility", "bool"),
        "incompatiblePatterns": ("incompatible_patterns", "strs"),
    },
    "ImportModules": {
        "self": ("self_import", "bool"),
        "requiredModules": ("required_modules", "bool"),
        "timeoutSeconds": ("timeout_seconds", "int"),
    },
    "Test": {
        "testsPath": ("tests_path", "str"),
        "enabled": ("enabled", "bool"),
        "failOnFailure": ("fail_on_failure", "bool"),
        "timeoutSeconds": ("timeout_seconds", "int"),
    },
    "Artefact": {
        "kind": ("kind", ("enum", ARTEFACT_KIND_VALUES)),
        "id": ("id", "str"),
        "enabled": ("enabled", "bool"),
        "path": ("path", "str"),
        "includeTagName": ("include_tag_name", "bool"),
        "artefactName": ("artefact_name", "str"),
        "scriptName": ("script_name", "str"),
        "doNotClear": ("do_not_clear", "bool"),
        "requiredModules": ("required_modules", ("object", ARTEFACT_REQUIRED_MODULES_FIELDS, ArtefactRequiredModules)),
        "directoryOutput": ("directory_output", "mappings"),
        "filesOutput": ("files_output", "mappings"),
        "destinationDirectoriesRelative": ("destination_directories_relative", "bool"),
        "destinationFilesRelative": ("destination_files_relative", "bool"),
    },
    "Publish": {
        "destination": ("destination", ("enum", PUBLISH_DESTINATION_VALUES)),
        "id": ("id", "str"),
        "enabled": ("enabled", "bool"),
        "tool": ("tool", ("enum", PUBLISH_TOOL_VALUES)),
        "apiKey": ("api_key", "secret"),
        "userName": ("user_name", "str"),
        "repositoryName": ("repository_name", "str"),
        "repository": ("repository", ("object", REPOSITORY_FIELDS, PublishRepository)),
        "force": ("force", "bool"),
        "overwriteTagName": ("overwrite_tag_name", "str"),
        "doNotMarkAsPreRelease": ("do_not_mark_as_prerelease", "bool"),
        "generateReleaseNotes": ("generate_release_notes", "bool"),
        "failFast": ("fail_fast", "bool"),
    },
}

SEGMENT_REQUIRED: Dict[str, Tuple[str, ...]] = {
    "RequiredModule": ("moduleName",),
    "ExternalModule": ("moduleName",),
    "ApprovedModule": ("moduleName",),
    "Command": ("moduleName",),
    "PlaceHolder": ("find",),
    "Artefact": ("kind",),
    "Publish": ("destination",),
}

_SINGLE_SEGMENT_CLASSES: Dict[str, type] = {
    "Manifest": ManifestSegment,
    "Build": BuildSegment,
    "Options": OptionsSegment,
    "Documentation": DocumentationSegment,
    "BuildDocumentation": BuildDocumentationSegment,
    "Formatting": FormattingSegment,
    "ModuleSkip": ModuleSkipSegment,
    "Validation": ValidationSegment,
    "FileConsistency": FileConsistencySegment,
    "Compatibility": CompatibilitySegment,
    "ImportModules": ImportModulesSegment,
    "Test": TestSegment,
    "Command": CommandSegment,
    "PlaceHolder": PlaceHolderSegment,
    "Artefact": ArtefactSegment,
    "Publish": PublishSegment,
}

_DEPENDENCY_SEGMENT_CLASSES: Dict[str, type] = {
    "RequiredModule": RequiredModuleSegment,
    "ExternalModule": ExternalModuleSegment,
    "ApprovedModule": ApprovedModuleSegment,
}


@dataclass(frozen=True)
class PlanInput:
    spec: PipelineSpec
    segments: List[Segment]
    source_path: str = ""


def resolve_plan_input_path(cwd: Path, cli_path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Path:
    """Resolve the plan input file.

    Precedence:
      1) CLI flag --plan
      2) MODFORGE_PLAN
      3) <cwd>/modforge.yml
    """
    if cli_path and str(cli_path).strip():
        return Path(str(cli_path).strip()).expanduser().resolve()

    env = os.environ if env is None else env
    env_path = str(env.get("MODFORGE_PLAN", "") or "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve()

    return (cwd / "modforge.yml").resolve()


# ---------------------------------------------------------------------------
# Schema


def _schema_for_type(wire_type: Any) -> Dict[str, Any]:
    if wire_type == "str" or wire_type == "secret":
        return {"type": "string"}
    if wire_type == "bool":
        return {"type": "boolean"}
    if wire_type == "int":
        return {"type": "integer"}
    if wire_type == "number":
        return {"type": "number"}
    if wire_type == "strs":
        return {"anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]}
    if wire_type == _CREDENTIAL:
        return {
            "type": "object",
            "required": ["userName", "secret"],
            "properties": {"userName": {"type": "string", "minLength": 1}, "secret": {"type": "string"}},
            "additionalProperties": False,
        }
    if wire_type == "mappings":
        return {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source", "destination"],
                "properties": {"source": {"type": "string", "minLength": 1}, "destination": {"type": "string"}},
                "additionalProperties": False,
            },
        }
    kind = wire_type[0]
    if kind == "enum":
        return {"type": "string", "enum": list(wire_type[1])}
    if kind == "object":
        return _schema_for_fields(wire_type[1])
    raise ValueError(f"unknown wire type: {wire_type!r}")


def _schema_for_fields(table: Dict[str, Tuple[str, Any]], required: Tuple[str, ...] = ()) -> Dict[str, Any]:
    # Fresh dict per call; callers attach these into larger schemas.
    return {
        "type": "object",
        "required": list(required),
        "properties": {k: _schema_for_type(t) for k, (_, t) in table.items()},
        "additionalProperties": False,
    }


def _segment_schema() -> Dict[str, Any]:
    branches: List[Dict[str, Any]] = []
    for seg_type in SEGMENT_TYPE_VALUES:
        branches.append(
            {
                "if": {"required": ["type"], "properties": {"type": {"const": seg_type}}},
                "then": {"properties": {"configuration": _schema_for_fields(SEGMENT_FIELDS[seg_type], SEGMENT_REQUIRED.get(seg_type, ()))}},
            }
        )
    return {
        "type": "object",
        "required": ["type"],
        "properties": {
            "type": {"type": "string", "enum": list(SEGMENT_TYPE_VALUES)},
            "configuration": {"type": "object"},
        },
        "additionalProperties": False,
        "allOf": branches,
    }


def plan_input_schema() -> Dict[str, Any]:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "required": ["schemaVersion", "build"],
        "properties": {
            "schemaVersion": {"type": "integer", "const": SCHEMA_VERSION},
            "build": {
                "type": "object",
                "required": ["moduleName", "sourceRoot"],
                "properties": {
                    "moduleName": {"type": "string"},
                    "sourceRoot": {"type": "string", "minLength": 1},
                    "stagingRoot": {"type": "string"},
                    "versionExpression": {"type": "string"},
                    "keepStaging": {"type": "boolean"},
                    "excludeDirectories": {"type": "array", "items": {"type": "string"}},
                    "excludeFiles": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
            "install": {
                "type": "object",
                "properties": {
                    "enabled": {"type": "boolean"},
                    "strategy": {"type": "string", "enum": list(INSTALL_STRATEGY_VALUES)},
                    "keepVersions": {"type": "integer"},
                    "roots": {"type": "array", "items": {"type": "string"}},
                    "legacyFlatHandling": {"type": "string", "enum": list(LEGACY_FLAT_HANDLING_VALUES)},
                    "preserveVersions": {"type": "array", "items": {"type": "string"}},
                    "updateManifestToResolvedVersion": {"type": "boolean"},
                },
                "additionalProperties": False,
            },
            "segments": {"type": "array", "items": _segment_schema()},
        },
        "additionalProperties": False,
    }


def _validate_dict(data: Any) -> None:
    validator = jsonschema.Draft202012Validator(plan_input_schema())
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    if not errors:
        return
    problems = []
    for e in errors:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        problems.append(f"{where}: {e.message}")
    raise ConfigurationError("plan input schema validation failed", problems)


# ---------------------------------------------------------------------------
# Decoding


def _strs(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    out: List[str] = []
    for v in value:
        s = str(v).strip()
        if s:
            out.append(s)
    return tuple(out)


def _resolve_secret(value: Any, where: str, env: Mapping[str, str]) -> Optional[Secret]:
    text = str(value or "").strip()
    if not text:
        return None
    if text.lower().startswith("env:"):
        name = text[4:].strip()
        resolved = str(env.get(name, "") or "").strip()
        if not resolved:
            raise ConfigurationError(f"{where}: environment variable {name!r} is not set")
        return Secret(value=resolved, source=f"env:{name}")
    return Secret(value=text, source="inline")


def _decode_value(wire_type: Any, value: Any, where: str, env: Mapping[str, str]) -> Any:
    if wire_type == "str":
        return str(value).strip()
    if wire_type in ("bool", "int", "number"):
        return value
    if wire_type == "strs":
        return _strs(value)
    if wire_type == "secret":
        return _resolve_secret(value, where, env)
    if wire_type == _CREDENTIAL:
        secret = _resolve_secret(value.get("secret"), f"{where}/secret", env)
        return RepositoryCredential(user_name=str(value["userName"]).strip(), secret=secret or Secret(value=""))
    if wire_type == "mappings":
        return tuple(CopyMapping(source=str(m["source"]).strip(), destination=str(m.get("destination", "")).strip()) for m in value)
    kind = wire_type[0]
    if kind == "enum":
        return str(value)
    if kind == "object":
        table, cls = wire_type[1], wire_type[2]
        kwargs, explicit = _decode_fields(value, table, where, env)
        if "explicit" in {f.name for f in dc_fields(cls)}:
            kwargs["explicit"] = explicit
        return cls(**kwargs)
    raise ValueError(f"unknown wire type: {wire_type!r}")


def _decode_fields(raw: Dict[str, Any], table: Dict[str, Tuple[str, Any]], where: str, env: Mapping[str, str]) -> Tuple[Dict[str, Any], frozenset]:
    kwargs: Dict[str, Any] = {}
    for wire_key, value in raw.items():
        py_name, wire_type = table[wire_key]
        if value is None:
            continue
        kwargs[py_name] = _decode_value(wire_type, value, f"{where}/{wire_key}", env)
    return kwargs, frozenset(kwargs.keys())


def _decode_dependency(raw: Dict[str, Any], where: str, env: Mapping[str, str]) -> ModuleDependency:
    kwargs, _ = _decode_fields(raw, DEPENDENCY_FIELDS, where, env)
    kwargs = {k: (v or None) for k, v in kwargs.items()}
    dep = ModuleDependency(**kwargs)
    if not dep.name:
        raise ConfigurationError(f"{where}: moduleName must not be empty")
    if dep.required_version and (dep.minimum_version or dep.maximum_version):
        raise ConfigurationError(
            f"{where}: module {dep.name!r} declares requiredVersion together with moduleVersion/maximumVersion; "
            "an entry is either an exact pin or a range"
        )
    return dep


def decode_segment(raw: Dict[str, Any], where: str, env: Mapping[str, str]) -> Segment:
    seg_type = str(raw.get("type"))
    cfg = raw.get("configuration") or {}

    if seg_type in _DEPENDENCY_SEGMENT_CLASSES:
        return _DEPENDENCY_SEGMENT_CLASSES[seg_type](module=_decode_dependency(cfg, where, env))

    cls = _SINGLE_SEGMENT_CLASSES.get(seg_type)
    if cls is None:
        raise ConfigurationError(f"{where}: unknown segment type {seg_type!r}")

    kwargs, explicit = _decode_fields(cfg, SEGMENT_FIELDS[seg_type], where, env)
    if "explicit" in {f.name for f in dc_fields(cls)}:
        kwargs["explicit"] = explicit
    return cls(**kwargs)


def _resolve_path(base_dir: Path, value: str) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    p = Path(text).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return str(p.resolve())


def decode_plan_input(data: Any, base_dir: Path, env: Optional[Mapping[str, str]] = None) -> PlanInput:
    """Validate and decode a plan input document into typed models.

    Relative paths are resolved against ``base_dir`` (the plan file's directory).
    """
    env = os.environ if env is None else env
    _validate_dict(data)

    b = data["build"]
    build_kwargs: Dict[str, Any] = {
        "module_name": str(b.get("moduleName", "")).strip(),
        "source_root": _resolve_path(base_dir, b["sourceRoot"]),
        "staging_root": _resolve_path(base_dir, b.get("stagingRoot", "")),
        "version_expression": str(b.get("versionExpression", "") or "").strip(),
        "keep_staging": bool(b.get("keepStaging", False)),
    }
    if "excludeDirectories" in b:
        build_kwargs["exclude_directories"] = _strs(b["excludeDirectories"])
    if "excludeFiles" in b:
        build_kwargs["exclude_files"] = _strs(b["excludeFiles"])

    i = data.get("install") or {}
    install_kwargs: Dict[str, Any] = {}
    if "enabled" in i:
        install_kwargs["enabled"] = bool(i["enabled"])
    if "strategy" in i:
        install_kwargs["strategy"] = str(i["strategy"])
    if "keepVersions" in i:
        install_kwargs["keep_versions"] = int(i["keepVersions"])
    if "roots" in i:
        install_kwargs["roots"] = tuple(_resolve_path(base_dir, r) for r in _strs(i["roots"]))
    if "legacyFlatHandling" in i:
        install_kwargs["legacy_flat_handling"] = str(i["legacyFlatHandling"])
    if "preserveVersions" in i:
        install_kwargs["preserve_versions"] = _strs(i["preserveVersions"])
    if "updateManifestToResolvedVersion" in i:
        install_kwargs["update_manifest_to_resolved_version"] = bool(i["updateManifestToResolvedVersion"])

    spec = PipelineSpec(
        build=BuildSpec(**build_kwargs),
        install=InstallSpec(**install_kwargs),
        schema_version=int(data["schemaVersion"]),
    )

    segments: List[Segment] = []
    for idx, raw in enumerate(data.get("segments") or []):
        segments.append(decode_segment(raw, f"segments/{idx}", env))

    return PlanInput(spec=spec, segments=segments)


def load_plan_input(path: Path, env: Optional[Mapping[str, str]] = None) -> PlanInput:
    """Load, validate and decode a plan input file (YAML or JSON)."""
    if not path.exists():
        raise ConfigurationError(f"plan input not found: {path}")
    data = read_yaml(path)
    decoded = decode_plan_input(data, base_dir=path.parent.resolve(), env=env)
    return PlanInput(spec=decoded.spec, segments=decoded.segments, source_path=str(path))
