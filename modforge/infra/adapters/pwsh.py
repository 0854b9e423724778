from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ToolError, ToolNotAvailableError
from ..models import (
    CertificateRef,
    PublishRepository,
    RepositoryCredential,
    SignatureStatus,
    SignOutcome,
    TestSuiteReport,
)
from .tool_runner import run_tool

_NOT_RECOGNIZED = ("is not recognized as a name of a cmdlet", "CommandNotFoundException")


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def _credential_env(credential: Optional[RepositoryCredential]) -> Dict[str, str]:
    if credential is None:
        return {}
    return {"MODFORGE_CRED_USER": credential.user_name, "MODFORGE_CRED_SECRET": credential.secret.value}


_CREDENTIAL_PRELUDE = (
    "$modforgeCred = $null; "
    "if ($env:MODFORGE_CRED_USER) { "
    "$modforgeCred = New-Object System.Management.Automation.PSCredential("
    "$env:MODFORGE_CRED_USER, (ConvertTo-SecureString $env:MODFORGE_CRED_SECRET -AsPlainText -Force)) }; "
)


class PwshSession:
    """Runs short PowerShell scripts through ``pwsh -Command``.

    Secrets are passed through the child environment, never on the command line.
    """

    def __init__(self, executable: str = "pwsh", *, timeout: float = 300.0, cancel_event: Optional[threading.Event] = None):
        self.executable = executable
        self.timeout = float(timeout)
        self.cancel_event = cancel_event

    def invoke(
        self,
        script: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> str:
        cmd = [self.executable, "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "$ErrorActionPreference = 'Stop'; " + script]
        try:
            cp = run_tool(
                cmd,
                timeout=self.timeout if timeout is None else timeout,
                cancel_event=cancel_event if cancel_event is not None else self.cancel_event,
                extra_env=env,
            )
        except ToolError as e:
            if not isinstance(e, ToolNotAvailableError) and any(m in e.output for m in _NOT_RECOGNIZED):
                raise ToolNotAvailableError(str(e), returncode=e.returncode, output=e.output) from e
            raise
        return (cp.stdout or "").strip()


class PwshModuleProvider:
    """ModuleProvider backed by PSResourceGet cmdlets."""

    tool_name = "PSResourceGet"

    def __init__(self, session: PwshSession):
        self.session = session

    def installed_version(self, name: str) -> Optional[str]:
        out = self.session.invoke(
            f"Get-Module -ListAvailable -Name {ps_quote(name)} | Sort-Object Version -Descending | "
            "Select-Object -First 1 | ForEach-Object { $_.Version.ToString() }"
        )
        return out.splitlines()[-1].strip() if out else None

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
        parts = [f"Install-PSResource -Name {ps_quote(name)} -Scope CurrentUser -TrustRepository -Quiet"]
        if version:
            parts.append(f"-Version {ps_quote(version)}")
        if repository:
            parts.append(f"-Repository {ps_quote(repository)}")
        if prerelease:
            parts.append("-Prerelease")
        if force:
            parts.append("-Reinstall")
        if credential is not None:
            parts.append("-Credential $modforgeCred")
        self.session.invoke(
            _CREDENTIAL_PRELUDE + " ".join(parts),
            timeout=timeout,
            cancel_event=cancel_event,
            env=_credential_env(credential),
        )

    def locate_installed(self, name: str, version: Optional[str] = None) -> Optional[Path]:
        where = f"| Where-Object {{ $_.Version.ToString() -eq {ps_quote(version)} }} " if version else ""
        out = self.session.invoke(
            f"Get-Module -ListAvailable -Name {ps_quote(name)} {where}| Sort-Object Version -Descending | "
            "Select-Object -First 1 -ExpandProperty ModuleBase"
        )
        return Path(out.splitlines()[-1].strip()) if out else None

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
        parts = [f"Save-PSResource -Name {ps_quote(name)} -Path {ps_quote(str(dest_dir))} -TrustRepository -Quiet"]
        if version:
            parts.append(f"-Version {ps_quote(version)}")
        if repository:
            parts.append(f"-Repository {ps_quote(repository)}")
        if credential is not None:
            parts.append("-Credential $modforgeCred")
        self.session.invoke(_CREDENTIAL_PRELUDE + " ".join(parts), timeout=timeout, env=_credential_env(credential))
        return dest_dir / name


class PwshFeedClient:
    """FeedClient for PSResourceGet and PowerShellGet repositories."""

    def __init__(self, session: PwshSession):
        self.session = session

    def find_latest_version(
        self,
        name: str,
        *,
        repository: str = "PSGallery",
        prerelease: bool = False,
        credential: Optional[RepositoryCredential] = None,
    ) -> Optional[str]:
        parts = [f"Find-PSResource -Name {ps_quote(name)} -Repository {ps_quote(repository)} -ErrorAction SilentlyContinue"]
        if prerelease:
            parts.append("-Prerelease")
        if credential is not None:
            parts.append("-Credential $modforgeCred")
        script = (
            _CREDENTIAL_PRELUDE
            + " ".join(parts)
            + " | Sort-Object Version -Descending | Select-Object -First 1 | ForEach-Object { "
            "if ($_.Prerelease) { \"$($_.Version)-$($_.Prerelease)\" } else { $_.Version.ToString() } }"
        )
        out = self.session.invoke(script, env=_credential_env(credential))
        return out.splitlines()[-1].strip() if out else None

    def ensure_registered(self, repository_name: str, repository: PublishRepository, *, tool: str) -> bool:
        name = ps_quote(repository_name)
        source = repository.source_uri or repository.uri or repository.publish_uri
        publish = repository.publish_uri or repository.uri or repository.source_uri
        if tool == "PowerShellGet":
            exists = self.session.invoke(f"if (Get-PSRepository -Name {name} -ErrorAction SilentlyContinue) {{ 'yes' }}")
            policy = "Trusted" if repository.trusted else "Untrusted"
            verb = "Set-PSRepository" if exists else "Register-PSRepository"
            self.session.invoke(
                f"{verb} -Name {name} -SourceLocation {ps_quote(source)} -PublishLocation {ps_quote(publish)} "
                f"-InstallationPolicy {policy}"
            )
            return not exists

        exists = self.session.invoke(f"if (Get-PSResourceRepository -Name {name} -ErrorAction SilentlyContinue) {{ 'yes' }}")
        verb = "Set-PSResourceRepository" if exists else "Register-PSResourceRepository"
        parts = [f"{verb} -Name {name} -Uri {ps_quote(publish)}"]
        if repository.trusted:
            parts.append("-Trusted")
        if repository.priority is not None:
            parts.append(f"-Priority {int(repository.priority)}")
        self.session.invoke(" ".join(parts))
        return not exists

    def unregister(self, repository_name: str, *, tool: str) -> None:
        cmdlet = "Unregister-PSRepository" if tool == "PowerShellGet" else "Unregister-PSResourceRepository"
        self.session.invoke(f"{cmdlet} -Name {ps_quote(repository_name)}")

    def publish(
        self,
        path: Path,
        *,
        repository_name: str,
        api_key: Optional[str],
        credential: Optional[RepositoryCredential],
        tool: str,
    ) -> None:
        env = _credential_env(credential)
        if api_key:
            env["MODFORGE_API_KEY"] = api_key
        if tool == "PowerShellGet":
            parts = [f"Publish-Module -Path {ps_quote(str(path))} -Repository {ps_quote(repository_name)}"]
            if api_key:
                parts.append("-NuGetApiKey $env:MODFORGE_API_KEY")
        else:
            parts = [f"Publish-PSResource -Path {ps_quote(str(path))} -Repository {ps_quote(repository_name)}"]
            if api_key:
                parts.append("-ApiKey $env:MODFORGE_API_KEY")
        if credential is not None:
            parts.append("-Credential $modforgeCred")
        self.session.invoke(_CREDENTIAL_PRELUDE + " ".join(parts), env=env)


def _certificate_script(cert: CertificateRef) -> str:
    if cert.thumbprint:
        tp = ps_quote(cert.thumbprint)
        return (
            f"$modforgeCert = Get-ChildItem -Path Cert:\\CurrentUser\\My, Cert:\\LocalMachine\\My -CodeSigningCert | "
            f"Where-Object {{ $_.Thumbprint -eq {tp} }} | Select-Object -First 1; "
            f"if (-not $modforgeCert) {{ throw 'certificate ' + {tp} + ' not found' }}; "
        )
    if cert.pfx_base64:
        source = "[Convert]::FromBase64String($env:MODFORGE_PFX_BASE64)"
    else:
        source = ps_quote(cert.pfx_path)
    return (
        "$modforgeCert = [System.Security.Cryptography.X509Certificates.X509Certificate2]::new("
        f"{source}, [string]$env:MODFORGE_PFX_PASSWORD); "
    )


def _certificate_env(cert: CertificateRef) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if cert.pfx_base64:
        env["MODFORGE_PFX_BASE64"] = cert.pfx_base64.value
    if cert.pfx_password:
        env["MODFORGE_PFX_PASSWORD"] = cert.pfx_password.value
    return env


class PwshSignatureTool:
    """SignatureTool using Get-/Set-AuthenticodeSignature."""

    def __init__(self, session: PwshSession):
        self.session = session
        self._thumbprints: Dict[CertificateRef, str] = {}

    def certificate_thumbprint(self, certificate: CertificateRef) -> str:
        if certificate.thumbprint:
            return certificate.thumbprint.strip().upper()
        if certificate not in self._thumbprints:
            out = self.session.invoke(_certificate_script(certificate) + "$modforgeCert.Thumbprint", env=_certificate_env(certificate))
            self._thumbprints[certificate] = out.strip().upper()
        return self._thumbprints[certificate]

    def query_signature_status(self, path: Path, certificate: CertificateRef) -> SignatureStatus:
        out = self.session.invoke(
            f"$s = Get-AuthenticodeSignature -FilePath {ps_quote(str(path))}; "
            "\"$($s.Status)|$($s.SignerCertificate.Thumbprint)\""
        )
        status, _, thumb = out.strip().partition("|")
        if status == "NotSigned" or not thumb.strip():
            return "NotSigned"
        if thumb.strip().upper() == self.certificate_thumbprint(certificate):
            return "SignedByThisCertificate"
        return "SignedByOtherCertificate"

    def sign(
        self,
        path: Path,
        certificate: CertificateRef,
        timestamp_server: str,
        *,
        timeout: float = 120.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> SignOutcome:
        ts = f" -TimestampServer {ps_quote(timestamp_server)}" if timestamp_server else ""
        out = self.session.invoke(
            _certificate_script(certificate)
            + f"$r = Set-AuthenticodeSignature -FilePath {ps_quote(str(path))} -Certificate $modforgeCert "
            f"-HashAlgorithm SHA256{ts}; $r.Status.ToString()",
            timeout=timeout,
            cancel_event=cancel_event,
            env=_certificate_env(certificate),
        )
        status = out.strip().splitlines()[-1] if out.strip() else ""
        if status == "Valid":
            return "Success"
        if status in ("HashMismatch", "NotSigned", "NotTrusted", "Incompatible"):
            return "Failure"
        return "Unknown"


class PwshModuleImporter:
    def __init__(self, session: PwshSession):
        self.session = session

    def import_module(self, target: str, *, timeout: float = 300.0, cancel_event: Optional[threading.Event] = None) -> None:
        self.session.invoke(f"Import-Module {ps_quote(target)} -Force", timeout=timeout, cancel_event=cancel_event)


class PesterTestRunner:
    """TestRunner using Pester 5 (``Invoke-Pester -PassThru``)."""

    __test__ = False

    def __init__(self, session: PwshSession):
        self.session = session

    def run_tests(
        self,
        module_path: Path,
        tests_path: Path,
        *,
        timeout: float = 1800.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> TestSuiteReport:
        out = self.session.invoke(
            f"Import-Module {ps_quote(str(module_path))} -Force; "
            f"$r = Invoke-Pester -Path {ps_quote(str(tests_path))} -PassThru -Output None; "
            "\"$($r.TotalCount)|$($r.PassedCount)|$($r.FailedCount)|$($r.SkippedCount)\"",
            timeout=timeout,
            cancel_event=cancel_event,
        )
        fields: List[str] = (out.strip().splitlines() or [""])[-1].split("|")
        if len(fields) != 4 or not all(f.strip().isdigit() for f in fields):
            raise ToolError(f"unexpected Pester output: {out[-500:]}", output=out)
        total, passed, failed, skipped = (int(f) for f in fields)
        return TestSuiteReport(name=str(tests_path), total=total, passed=passed, failed=failed, skipped=skipped)
