from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

# Canonical enum-like values. These tuples are the single source of truth for
# the JSON schema enums and for decoder checks.
InstallStrategy = Literal["Exact", "AutoRevision"]
INSTALL_STRATEGY_VALUES: Tuple[str, ...] = ("Exact", "AutoRevision")

LegacyFlatHandling = Literal["Warn", "Convert", "Ignore"]
LEGACY_FLAT_HANDLING_VALUES: Tuple[str, ...] = ("Warn", "Convert", "Ignore")

ArtefactKind = Literal["Packed", "Unpacked", "Script", "ScriptPacked"]
ARTEFACT_KIND_VALUES: Tuple[str, ...] = ("Packed", "Unpacked", "Script", "ScriptPacked")
PACKED_ARTEFACT_KINDS: Tuple[str, ...] = ("Packed", "ScriptPacked")

PublishDestination = Literal["Repository", "GitHub"]
PUBLISH_DESTINATION_VALUES: Tuple[str, ...] = ("Repository", "GitHub")

PublishTool = Literal["Auto", "PSResourceGet", "PowerShellGet"]
PUBLISH_TOOL_VALUES: Tuple[str, ...] = ("Auto", "PSResourceGet", "PowerShellGet")

RequiredModuleSource = Literal["Local", "Remote"]
REQUIRED_MODULE_SOURCE_VALUES: Tuple[str, ...] = ("Local", "Remote")

ValidationSeverity = Literal["Off", "Warning", "Error"]
VALIDATION_SEVERITY_VALUES: Tuple[str, ...] = ("Off", "Warning", "Error")

ValidationStatus = Literal["Pass", "Warning", "Fail"]

DependencyStatus = Literal["Skipped", "Satisfied", "Installed", "Updated", "Failed"]

SignatureStatus = Literal["NotSigned", "SignedByThisCertificate", "SignedByOtherCertificate"]
SignOutcome = Literal["Success", "Failure", "Unknown"]

PublishStatus = Literal["Published", "AlreadyPublished", "Failed"]
ArtefactStatus = Literal["Succeeded", "Failed"]

StepKind = Literal[
    "Build",
    "Documentation",
    "Formatting",
    "Signing",
    "Validation",
    "Tests",
    "Artefact",
    "Publish",
    "Install",
    "Cleanup",
]
StepStatus = Literal["COMPLETED", "WARNING", "FAILED", "SKIPPED", "CANCELLED"]
PipelineStatus = Literal["SUCCEEDED", "PARTIAL", "FAILED", "CANCELLED"]

LINE_ENDING_VALUES: Tuple[str, ...] = ("CRLF", "LF")
ENCODING_VALUES: Tuple[str, ...] = ("UTF8BOM", "UTF8")

DEFAULT_SCRIPT_PATTERNS: Tuple[str, ...] = ("*.ps1", "*.psm1", "*.psd1")
DEFAULT_EXCLUDE_DIRECTORIES: Tuple[str, ...] = (".git", ".vs", "Artefacts", "Ignore")
DEFAULT_EXCLUDE_FILES: Tuple[str, ...] = (".gitignore",)

# In-progress marker written into staging for the lifetime of one run.
RUN_MARKER_NAME = ".modforge-run.lock"


# ---------------------------------------------------------------------------
# Credentials


@dataclass(frozen=True)
class Secret:
    """A credential value resolved once at the config boundary."""

    value: str = field(repr=False)
    source: str = "inline"

    def __bool__(self) -> bool:
        return bool(str(self.value or "").strip())


@dataclass(frozen=True)
class RepositoryCredential:
    user_name: str
    secret: Secret


# ---------------------------------------------------------------------------
# Spec (plan input root)


@dataclass(frozen=True)
class ModuleDependency:
    """A module dependency: either an exact pin or a (min, max) range, never both."""

    name: str
    minimum_version: Optional[str] = None
    maximum_version: Optional[str] = None
    required_version: Optional[str] = None
    guid: Optional[str] = None

    @property
    def is_exact(self) -> bool:
        return bool(self.required_version)

    @property
    def requested_version(self) -> Optional[str]:
        return self.required_version or self.minimum_version


@dataclass(frozen=True)
class BuildSpec:
    module_name: str
    source_root: str
    staging_root: str = ""
    version_expression: str = ""
    keep_staging: bool = False
    exclude_directories: Tuple[str, ...] = DEFAULT_EXCLUDE_DIRECTORIES
    exclude_files: Tuple[str, ...] = DEFAULT_EXCLUDE_FILES


@dataclass(frozen=True)
class InstallSpec:
    enabled: bool = True
    strategy: InstallStrategy = "AutoRevision"
    keep_versions: int = 3
    roots: Tuple[str, ...] = ()
    legacy_flat_handling: LegacyFlatHandling = "Warn"
    preserve_versions: Tuple[str, ...] = ()
    update_manifest_to_resolved_version: bool = True


@dataclass(frozen=True)
class PipelineSpec:
    """Immutable user-declared input, created once per invocation."""

    build: BuildSpec
    install: InstallSpec = field(default_factory=InstallSpec)
    schema_version: int = 1


# ---------------------------------------------------------------------------
# Configuration segments (closed set, one class per wire `type`).
#
# Single-instance segments carry `explicit`: the field names present on the
# wire. Merging copies only explicit fields so that "last write wins" never
# resets a value to its default.


def _explicit() -> FrozenSet[str]:
    return frozenset()


@dataclass(frozen=True)
class ManifestSegment:
    segment_type: ClassVar[str] = "Manifest"

    module_version: str = ""
    prerelease: str = ""
    compatible_ps_editions: Tuple[str, ...] = ("Desktop", "Core")
    author: str = ""
    company_name: str = ""
    copyright: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()
    project_uri: str = ""
    license_uri: str = ""
    icon_uri: str = ""
    release_notes: str = ""
    guid: str = ""
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class BuildSegment:
    segment_type: ClassVar[str] = "Build"

    merge: bool = False
    merge_missing: bool = False
    sign_merged: bool = False
    refresh_manifest_only: bool = False
    local_version: bool = False
    install_missing_modules: bool = False
    install_missing_modules_force: bool = False
    install_missing_modules_prerelease: bool = False
    install_missing_modules_repository: str = ""
    install_missing_modules_credential: Optional[RepositoryCredential] = None
    fail_on_dependency_error: bool = False
    fail_on_delete_error: bool = False
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class SigningOptions:
    certificate_thumbprint: str = ""
    certificate_pfx_path: str = ""
    certificate_pfx_base64: Optional[Secret] = None
    certificate_pfx_password: Optional[Secret] = None
    timestamp_server: str = "http://timestamp.digicert.com"
    include: Tuple[str, ...] = ()
    exclude_paths: Tuple[str, ...] = ()
    exclude_patterns: Tuple[str, ...] = ()
    include_internals: bool = False
    include_binaries: bool = True
    include_exe: bool = False
    overwrite_signed: bool = False
    fail_on_error: bool = False
    timeout_seconds: int = 120
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate_thumbprint.strip() or self.certificate_pfx_path.strip() or self.certificate_pfx_base64)


@dataclass(frozen=True)
class OptionsSegment:
    segment_type: ClassVar[str] = "Options"

    signing: Optional[SigningOptions] = None
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class DocumentationSegment:
    segment_type: ClassVar[str] = "Documentation"

    path: str = "Docs"
    readme_path: str = "Docs/Readme.md"
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class BuildDocumentationSegment:
    segment_type: ClassVar[str] = "BuildDocumentation"

    enable: bool = False
    start_clean: bool = False
    generate_external_help: bool = False
    external_help_culture: str = "en-US"
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class FormattingSegment:
    segment_type: ClassVar[str] = "Formatting"

    enable: bool = False
    update_project_root: bool = False
    line_ending: str = "CRLF"
    encoding: str = "UTF8BOM"
    trim_trailing_whitespace: bool = True
    include: Tuple[str, ...] = DEFAULT_SCRIPT_PATTERNS
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class RequiredModuleSegment:
    segment_type: ClassVar[str] = "RequiredModule"

    module: ModuleDependency


@dataclass(frozen=True)
class ExternalModuleSegment:
    segment_type: ClassVar[str] = "ExternalModule"

    module: ModuleDependency


@dataclass(frozen=True)
class ApprovedModuleSegment:
    segment_type: ClassVar[str] = "ApprovedModule"

    module: ModuleDependency


@dataclass(frozen=True)
class CommandSegment:
    segment_type: ClassVar[str] = "Command"

    module_name: str
    command_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PlaceHolderSegment:
    segment_type: ClassVar[str] = "PlaceHolder"

    find: str
    replace: str = ""


@dataclass(frozen=True)
class ModuleSkipSegment:
    segment_type: ClassVar[str] = "ModuleSkip"

    ignore_module_names: Tuple[str, ...] = ()
    ignore_function_names: Tuple[str, ...] = ()
    force: bool = False
    fail_on_missing_commands: bool = False


@dataclass(frozen=True)
class ValidationSegment:
    segment_type: ClassVar[str] = "Validation"

    enable: bool = False
    severity: ValidationSeverity = "Warning"
    check_manifest_fields: bool = True
    check_exports: bool = True
    required_manifest_fields: Tuple[str, ...] = ("version", "author", "description")
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class FileConsistencySegment:
    segment_type: ClassVar[str] = "FileConsistency"

    enable: bool = False
    severity: ValidationSeverity = "Warning"
    check_project_root: bool = False
    max_inconsistency_percentage: float = 5.0
    required_encoding: str = "UTF8BOM"
    required_line_ending: str = "CRLF"
    include: Tuple[str, ...] = DEFAULT_SCRIPT_PATTERNS
    exclude_directories: Tuple[str, ...] = DEFAULT_EXCLUDE_DIRECTORIES
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class CompatibilitySegment:
    segment_type: ClassVar[str] = "Compatibility"

    enable: bool = False
    severity: ValidationSeverity = "Warning"
    minimum_compatibility_percentage: float = 95.0
    require_cross_compatibility: bool = False
    incompatible_patterns: Tuple[str, ...] = ()
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class ImportModulesSegment:
    segment_type: ClassVar[str] = "ImportModules"

    self_import: bool = False
    required_modules: bool = False
    timeout_seconds: int = 300
    explicit: FrozenSet[str] = field(default_factory=_explicit, compare=False, repr=False)


@dataclass(frozen=True)
class TestSegment:
    segment_type: ClassVar[str] = "Test"
    __test__ = False

    tests_path: str = "Tests"
    enabled: bool = True
    fail_on_failure: bool = True
    timeout_seconds: int = 1800


@dataclass(frozen=True)
class CopyMapping:
    source: str
    destination: str


@dataclass(frozen=True)
class ArtefactRequiredModules:
    enabled: bool = False
    modules_path: str = ""
    source: RequiredModuleSource = "Local"
    repository: str = ""
    credential: Optional[RepositoryCredential] = None


@dataclass(frozen=True)
class ArtefactSegment:
    segment_type: ClassVar[str] = "Artefact"

    kind: ArtefactKind = "Packed"
    id: str = ""
    enabled: bool = True
    path: str = ""
    include_tag_name: bool = False
    artefact_name: str = ""
    script_name: str = ""
    do_not_clear: bool = False
    required_modules: ArtefactRequiredModules = field(default_factory=ArtefactRequiredModules)
    directory_output: Tuple[CopyMapping, ...] = ()
    files_output: Tuple[CopyMapping, ...] = ()
    destination_directories_relative: bool = True
    destination_files_relative: bool = True


@dataclass(frozen=True)
class PublishRepository:
    name: str = ""
    uri: str = ""
    source_uri: str = ""
    publish_uri: str = ""
    trusted: bool = True
    priority: Optional[int] = None
    ensure_registered: bool = True
    unregister_after_use: bool = False
    credential: Optional[RepositoryCredential] = None

    @property
    def has_uris(self) -> bool:
        return bool(self.uri.strip() or self.source_uri.strip() or self.publish_uri.strip())


@dataclass(frozen=True)
class PublishSegment:
    segment_type: ClassVar[str] = "Publish"

    destination: PublishDestination = "Repository"
    id: str = ""
    enabled: bool = True
    tool: PublishTool = "Auto"
    api_key: Optional[Secret] = None
    user_name: str = ""
    repository_name: str = ""
    repository: Optional[PublishRepository] = None
    force: bool = False
    overwrite_tag_name: str = ""
    do_not_mark_as_prerelease: bool = False
    generate_release_notes: bool = False
    fail_fast: bool = False

    @property
    def feed_name(self) -> str:
        """Feed name for Repository publishes: repository.name, then repositoryName, then PSGallery."""
        if self.repository is not None and self.repository.name.strip():
            return self.repository.name.strip()
        return self.repository_name.strip() or "PSGallery"


Segment = Union[
    ManifestSegment,
    BuildSegment,
    OptionsSegment,
    DocumentationSegment,
    BuildDocumentationSegment,
    FormattingSegment,
    RequiredModuleSegment,
    ExternalModuleSegment,
    ApprovedModuleSegment,
    CommandSegment,
    PlaceHolderSegment,
    ModuleSkipSegment,
    ValidationSegment,
    FileConsistencySegment,
    CompatibilitySegment,
    ImportModulesSegment,
    TestSegment,
    ArtefactSegment,
    PublishSegment,
]

SEGMENT_CLASSES: Tuple[type, ...] = (
    ManifestSegment,
    BuildSegment,
    OptionsSegment,
    DocumentationSegment,
    BuildDocumentationSegment,
    FormattingSegment,
    RequiredModuleSegment,
    ExternalModuleSegment,
    ApprovedModuleSegment,
    CommandSegment,
    PlaceHolderSegment,
    ModuleSkipSegment,
    ValidationSegment,
    FileConsistencySegment,
    CompatibilitySegment,
    ImportModulesSegment,
    TestSegment,
    ArtefactSegment,
    PublishSegment,
)
SEGMENT_TYPE_VALUES: Tuple[str, ...] = tuple(c.segment_type for c in SEGMENT_CLASSES)


# ---------------------------------------------------------------------------
# Plan


@dataclass(frozen=True)
class Plan:
    """Single source of truth for one run. Computed once, never mutated."""

    module_name: str
    project_root: str
    expected_version: str
    resolved_version: str
    version_source: str
    prerelease: str
    build: BuildSpec
    staging_path: str
    staging_was_generated: bool
    delete_staging_after_run: bool
    run_key: str

    compatible_editions: Tuple[str, ...] = ()

    # Required + external: what the manifest declares.
    required_modules: Tuple[ModuleDependency, ...] = ()
    external_modules: Tuple[ModuleDependency, ...] = ()
    approved_modules: Tuple[ModuleDependency, ...] = ()
    # Required only: what artefacts may bundle.
    required_modules_for_packaging: Tuple[ModuleDependency, ...] = ()

    command_dependencies: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    placeholders: Tuple[PlaceHolderSegment, ...] = ()
    module_skip: ModuleSkipSegment = field(default_factory=ModuleSkipSegment)

    build_options: BuildSegment = field(default_factory=BuildSegment)
    manifest: ManifestSegment = field(default_factory=ManifestSegment)
    signing: Optional[SigningOptions] = None
    documentation: DocumentationSegment = field(default_factory=DocumentationSegment)
    build_documentation: BuildDocumentationSegment = field(default_factory=BuildDocumentationSegment)
    formatting: FormattingSegment = field(default_factory=FormattingSegment)
    file_consistency: FileConsistencySegment = field(default_factory=FileConsistencySegment)
    compatibility: CompatibilitySegment = field(default_factory=CompatibilitySegment)
    module_validation: ValidationSegment = field(default_factory=ValidationSegment)
    import_modules: Optional[ImportModulesSegment] = None
    tests: Tuple[TestSegment, ...] = ()

    artefacts: Tuple[ArtefactSegment, ...] = ()
    publishes: Tuple[PublishSegment, ...] = ()
    install: InstallSpec = field(default_factory=InstallSpec)

    local_manifest_version: Optional[str] = None
    remote_version: Optional[str] = None

    @property
    def version_with_prerelease(self) -> str:
        return f"{self.resolved_version}-{self.prerelease}" if self.prerelease else self.resolved_version

    @property
    def sign_enabled(self) -> bool:
        return bool(self.build_options.sign_merged and self.signing is not None)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ---------------------------------------------------------------------------
# Steps and boundary results


@dataclass(frozen=True)
class PipelineStep:
    kind: StepKind
    key: str
    title: str
    artefact: Optional[ArtefactSegment] = None
    publish: Optional[PublishSegment] = None
    test: Optional[TestSegment] = None
    index: int = 0


@dataclass(frozen=True)
class ManifestMetadata:
    version: Optional[str] = None
    prerelease: Optional[str] = None
    required_modules: Tuple[ModuleDependency, ...] = ()
    functions_to_export: Tuple[str, ...] = ()
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildRequest:
    """Everything the staging builder needs; derived from the plan."""

    module_name: str
    source_root: str
    staging_path: str
    merge: bool = False
    merge_missing: bool = False
    refresh_manifest_only: bool = False
    exclude_directories: Tuple[str, ...] = DEFAULT_EXCLUDE_DIRECTORIES
    exclude_files: Tuple[str, ...] = DEFAULT_EXCLUDE_FILES
    placeholders: Tuple[PlaceHolderSegment, ...] = ()
    ignore_function_names: Tuple[str, ...] = ()
    # Commands provided by declared dependencies; never reported missing.
    known_commands: Tuple[str, ...] = ()
    # Installed approved-module folders searched for helpers when merge_missing is set.
    helper_roots: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StagingResult:
    staging_path: str
    manifest_path: str
    export_set: Tuple[str, ...] = ()
    missing_commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DependencyInstallResult:
    name: str
    installed_version: Optional[str]
    resolved_version: Optional[str]
    requested_version: Optional[str]
    status: DependencyStatus
    installer: str = ""
    message: str = ""


@dataclass(frozen=True)
class BuildResult:
    staging_path: str
    manifest_path: str
    export_set: Tuple[str, ...] = ()
    missing_commands: Tuple[str, ...] = ()
    dependencies: Tuple[DependencyInstallResult, ...] = ()


@dataclass(frozen=True)
class HelpCommand:
    name: str
    synopsis: str = ""
    description: str = ""
    parameters: Tuple[Tuple[str, str], ...] = ()
    examples: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentationResult:
    commands: Tuple[str, ...] = ()
    files_written: Tuple[str, ...] = ()
    external_help_path: str = ""


@dataclass(frozen=True)
class FormatResult:
    root: str
    files_total: int = 0
    files_changed: int = 0


@dataclass(frozen=True)
class CertificateRef:
    thumbprint: str = ""
    pfx_path: str = ""
    pfx_base64: Optional[Secret] = None
    pfx_password: Optional[Secret] = None


@dataclass(frozen=True)
class SigningResult:
    matched: int = 0
    after_exclude: int = 0
    already_signed_by_this_cert: int = 0
    already_signed_other: int = 0
    attempted: int = 0
    signed_new: int = 0
    resigned: int = 0
    failed: int = 0
    unknown_error: int = 0
    thumbprint: str = ""
    failed_files: Tuple[str, ...] = ()
    unknown_files: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass(frozen=True)
class ConsistencyScan:
    total_files: int
    files_with_issues: Tuple[Tuple[str, str], ...] = ()  # (relative path, problem)


@dataclass(frozen=True)
class CompatibilityScan:
    total_files: int
    incompatible: Tuple[Tuple[str, str, str], ...] = ()  # (relative path, edition, reason)
    editions: Tuple[str, ...] = ("Desktop", "Core")


@dataclass(frozen=True)
class ModuleCheck:
    name: str
    status: ValidationStatus
    message: str = ""


@dataclass(frozen=True)
class ValidationReport:
    name: str
    status: ValidationStatus
    severity: ValidationSeverity = "Warning"
    total: int = 0
    issues: int = 0
    percentage: float = 0.0
    message: str = ""
    details: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TestSuiteReport:
    __test__ = False

    name: str
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    message: str = ""


@dataclass(frozen=True)
class ArtefactResult:
    id: str
    kind: ArtefactKind
    output_path: str
    status: ArtefactStatus = "Succeeded"
    files: Tuple[str, ...] = ()
    sha256: str = ""
    bytes_size: int = 0
    bundled_modules: Tuple[str, ...] = ()
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "Succeeded"


@dataclass(frozen=True)
class PublishResult:
    destination: PublishDestination
    id: str = ""
    repository_name: str = ""
    user_name: str = ""
    tag_name: str = ""
    is_prerelease: bool = False
    asset_paths: Tuple[str, ...] = ()
    release_url: str = ""
    status: PublishStatus = "Published"
    message: str = ""
    repository_created: bool = False
    repository_unregistered: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status != "Failed"


@dataclass(frozen=True)
class RootInstallResult:
    root: str
    module_root: str
    installed_path: str = ""
    pruned: Tuple[str, ...] = ()
    preserved: Tuple[str, ...] = ()
    legacy_flat_detected: bool = False
    legacy_flat_action: str = "None"
    legacy_version: str = ""
    delete_errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InstallResult:
    version: str
    strategy: InstallStrategy
    roots: Tuple[RootInstallResult, ...] = ()


@dataclass(frozen=True)
class StepResult:
    key: str
    kind: StepKind
    title: str
    status: StepStatus
    message: str = ""
    started_at: str = ""
    ended_at: str = ""


@dataclass
class PipelineResult:
    """Terminal, serializable output of one run."""

    plan: Plan
    status: PipelineStatus = "SUCCEEDED"
    steps: List[StepResult] = field(default_factory=list)
    build: Optional[BuildResult] = None
    documentation: Optional[DocumentationResult] = None
    formatting: List[FormatResult] = field(default_factory=list)
    signing: Optional[SigningResult] = None
    validations: List[ValidationReport] = field(default_factory=list)
    tests: List[TestSuiteReport] = field(default_factory=list)
    artefacts: List[ArtefactResult] = field(default_factory=list)
    publishes: List[PublishResult] = field(default_factory=list)
    install: Optional[InstallResult] = None
    error: str = ""
    error_type: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"

    def step(self, key: str) -> Optional[StepResult]:
        for s in self.steps:
            if s.key == key:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        out = to_jsonable(self)
        if self.signing is not None:
            out["signing"]["success"] = self.signing.success
        return out


def to_jsonable(obj: Any) -> Any:
    """Convert models to JSON-ready values. Secrets are redacted."""
    if isinstance(obj, Secret):
        return "***" if obj else ""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(obj):
            if f.name == "explicit":
                continue
            out[f.name] = to_jsonable(getattr(obj, f.name))
        return out
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    return obj
