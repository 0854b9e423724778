from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .models import (
    BuildRequest,
    CertificateRef,
    CompatibilityScan,
    ConsistencyScan,
    FileConsistencySegment,
    CompatibilitySegment,
    FormattingSegment,
    HelpCommand,
    ManifestMetadata,
    ModuleCheck,
    PublishRepository,
    RepositoryCredential,
    SignatureStatus,
    SignOutcome,
    StagingResult,
    TestSuiteReport,
    ValidationSegment,
)


class ManifestEditor(Protocol):
    """Black-box manifest read/write. Never exposes manifest syntax."""

    def manifest_path(self, module_root: Path, module_name: str) -> Path:
        raise NotImplementedError

    def read_metadata(self, path: Path) -> ManifestMetadata:
        raise NotImplementedError

    def write_metadata(self, path: Path, patch: Dict[str, Any]) -> None:
        raise NotImplementedError


class StagingBuilder(Protocol):
    def build_to_staging(self, request: BuildRequest) -> StagingResult:
        raise NotImplementedError


class VersionSource(Protocol):
    def find_latest_version(
        self,
        name: str,
        *,
        repository: str = "PSGallery",
        prerelease: bool = False,
        credential: Optional[RepositoryCredential] = None,
    ) -> Optional[str]:
        raise NotImplementedError


class ModuleProvider(Protocol):
    """Package-manager boundary used for dependency install and artefact bundling."""

    tool_name: str

    def installed_version(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def install(
        self,
        name: str,
        *,
        version: Optional[str],
        repository: str = "",
        credential: Optional[RepositoryCredential] = None,
        prerelease: bool = False,
        force: bool = False,
        timeout: float = 300.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        raise NotImplementedError

    def locate_installed(self, name: str, version: Optional[str] = None) -> Optional[Path]:
        raise NotImplementedError

    def save(
        self,
        name: str,
        *,
        version: Optional[str],
        dest_dir: Path,
        repository: str = "",
        credential: Optional[RepositoryCredential] = None,
        timeout: float = 300.0,
    ) -> Path:
        raise NotImplementedError


class SignatureTool(Protocol):
    def query_signature_status(self, path: Path, certificate: CertificateRef) -> SignatureStatus:
        raise NotImplementedError

    def sign(
        self,
        path: Path,
        certificate: CertificateRef,
        timestamp_server: str,
        *,
        timeout: float = 120.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> SignOutcome:
        raise NotImplementedError

    def certificate_thumbprint(self, certificate: CertificateRef) -> str:
        raise NotImplementedError


class FeedClient(VersionSource, Protocol):
    """Package-feed registry boundary (register, push, unregister)."""

    def ensure_registered(self, repository_name: str, repository: PublishRepository, *, tool: str) -> bool:
        raise NotImplementedError

    def unregister(self, repository_name: str, *, tool: str) -> None:
        raise NotImplementedError

    def publish(
        self,
        path: Path,
        *,
        repository_name: str,
        api_key: Optional[str],
        credential: Optional[RepositoryCredential],
        tool: str,
    ) -> None:
        raise NotImplementedError


class ReleaseClient(Protocol):
    """Source-hosting release boundary."""

    def get_release_by_tag(self, owner: str, repo: str, tag: str, *, token: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create_release(
        self,
        owner: str,
        repo: str,
        *,
        token: str,
        tag: str,
        name: str,
        prerelease: bool,
        generate_release_notes: bool,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def delete_asset(self, owner: str, repo: str, asset_id: int, *, token: str) -> None:
        raise NotImplementedError

    def upload_asset(self, release: Dict[str, Any], path: Path, *, token: str) -> Dict[str, Any]:
        raise NotImplementedError


class Formatter(Protocol):
    def format_tree(self, root: Path, settings: FormattingSegment, *, exclude_dirs: Tuple[str, ...] = ()) -> Tuple[int, int]:
        """Returns (files_total, files_changed)."""
        raise NotImplementedError


class DocumentationEngine(Protocol):
    def extract_help(self, staging_path: Path, module_name: str, export_set: Tuple[str, ...]) -> List[HelpCommand]:
        raise NotImplementedError

    def write_markdown(self, commands: List[HelpCommand], docs_path: Path, readme_path: Path, *, module_name: str, start_clean: bool = False) -> List[Path]:
        raise NotImplementedError

    def write_external_help(self, commands: List[HelpCommand], output_dir: Path, *, module_name: str) -> Path:
        raise NotImplementedError


class ConsistencyAnalyzer(Protocol):
    def scan(self, root: Path, settings: FileConsistencySegment) -> ConsistencyScan:
        raise NotImplementedError


class CompatibilityAnalyzer(Protocol):
    def scan(self, root: Path, settings: CompatibilitySegment) -> CompatibilityScan:
        raise NotImplementedError


class ModuleValidator(Protocol):
    def validate(
        self,
        staging_path: Path,
        manifest_path: Path,
        *,
        expected_version: str,
        export_set: Tuple[str, ...],
        settings: ValidationSegment,
    ) -> List[ModuleCheck]:
        raise NotImplementedError


class ModuleImporter(Protocol):
    def import_module(self, target: str, *, timeout: float = 300.0, cancel_event: Optional[threading.Event] = None) -> None:
        raise NotImplementedError


class TestRunner(Protocol):
    __test__ = False

    def run_tests(
        self,
        module_path: Path,
        tests_path: Path,
        *,
        timeout: float = 1800.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> TestSuiteReport:
        raise NotImplementedError
