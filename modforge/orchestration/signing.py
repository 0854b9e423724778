from __future__ import annotations

import fnmatch
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from ..infra.contracts import SignatureTool
from ..infra.errors import ToolTimeoutError
from ..infra.models import CertificateRef, SigningOptions, SigningResult
from ..utils.fs import iter_files

MAX_REPORTED_FILES = 20

_SCRIPT_PATTERNS: Tuple[str, ...] = ("*.ps1", "*.psm1", "*.psd1")
_BINARY_PATTERNS: Tuple[str, ...] = ("*.dll", "*.cat")


def include_patterns(options: SigningOptions) -> Tuple[str, ...]:
    if options.include:
        return tuple(options.include)
    patterns = list(_SCRIPT_PATTERNS)
    if options.include_binaries:
        patterns.extend(_BINARY_PATTERNS)
    if options.include_exe:
        patterns.append("*.exe")
    return tuple(patterns)


def excluded_substrings(options: SigningOptions) -> Tuple[str, ...]:
    subs: List[str] = []
    if not options.include_internals:
        subs.append("Internals")
    # Bundled dependencies are signed by their own publishers.
    subs.append("Modules")
    subs.extend(p for p in options.exclude_paths if p.strip())
    return tuple(subs)


def certificate_from_options(options: SigningOptions) -> CertificateRef:
    return CertificateRef(
        thumbprint=options.certificate_thumbprint.strip(),
        pfx_path=options.certificate_pfx_path.strip(),
        pfx_base64=options.certificate_pfx_base64,
        pfx_password=options.certificate_pfx_password,
    )


def _matches(rel: str, patterns: Tuple[str, ...]) -> bool:
    name = rel.rsplit("/", 1)[-1].lower()
    low = rel.lower()
    for pat in patterns:
        p = pat.lower()
        if fnmatch.fnmatchcase(name, p) or fnmatch.fnmatchcase(low, p):
            return True
    return False


def _excluded(rel: str, substrings: Tuple[str, ...], patterns: Tuple[str, ...]) -> bool:
    parts = [p.lower() for p in rel.split("/")[:-1]]
    low = rel.lower()
    for sub in substrings:
        s = sub.strip().strip("/\\").replace("\\", "/").lower()
        if not s:
            continue
        if "/" in s:
            if s in low:
                return True
        elif s in parts:
            return True
    return any(fnmatch.fnmatchcase(low, p.lower()) for p in patterns)


@dataclass(frozen=True)
class _FileOutcome:
    rel: str
    prior: str
    attempted: bool
    outcome: str  # skipped|signed_new|resigned|failed|unknown


class SigningEngine:
    """Idempotent signing of a staged tree.

    Files already signed are left alone unless ``overwrite_signed`` is set,
    so a second run over the same tree attempts nothing. Failed signatures
    are never retried here.
    """

    def __init__(self, tool: SignatureTool, *, max_workers: int = 4, cancel_event: Optional[threading.Event] = None):
        self.tool = tool
        self.max_workers = max(1, int(max_workers))
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def select_files(self, root: Path, options: SigningOptions) -> Tuple[List[str], List[str]]:
        """Return (matched, after_exclude) relative posix paths."""
        includes = include_patterns(options)
        subs = excluded_substrings(options)
        matched = [p.relative_to(root).as_posix() for p in iter_files(root)]
        matched = [rel for rel in matched if _matches(rel, includes)]
        kept = [rel for rel in matched if not _excluded(rel, subs, tuple(options.exclude_patterns))]
        return matched, kept

    def sign_tree(self, root: Path, options: SigningOptions, certificate: Optional[CertificateRef] = None) -> SigningResult:
        cert = certificate if certificate is not None else certificate_from_options(options)
        thumbprint = self.tool.certificate_thumbprint(cert)
        matched, kept = self.select_files(root, options)
        print(f"[sign] {len(matched)} matched, {len(kept)} after exclusions (cert {thumbprint})")

        def one(rel: str) -> _FileOutcome:
            return self._sign_one(root, rel, cert, options)

        outcomes: List[_FileOutcome] = []
        if kept:
            workers = min(self.max_workers, len(kept))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="modforge-sign") as pool:
                outcomes = list(pool.map(one, kept))

        failed = sorted(o.rel for o in outcomes if o.outcome == "failed")
        unknown = sorted(o.rel for o in outcomes if o.outcome == "unknown")
        result = SigningResult(
            matched=len(matched),
            after_exclude=len(kept),
            already_signed_by_this_cert=sum(1 for o in outcomes if o.prior == "SignedByThisCertificate"),
            already_signed_other=sum(1 for o in outcomes if o.prior == "SignedByOtherCertificate"),
            attempted=sum(1 for o in outcomes if o.attempted),
            signed_new=sum(1 for o in outcomes if o.outcome == "signed_new"),
            resigned=sum(1 for o in outcomes if o.outcome == "resigned"),
            failed=len(failed),
            unknown_error=len(unknown),
            thumbprint=thumbprint,
            failed_files=tuple(failed[:MAX_REPORTED_FILES]),
            unknown_files=tuple(unknown[:MAX_REPORTED_FILES]),
        )
        if result.failed or result.unknown_error:
            print(f"[sign][WARN] {result.failed} failed, {result.unknown_error} unknown error(s)")
        return result

    def _sign_one(self, root: Path, rel: str, cert: CertificateRef, options: SigningOptions) -> _FileOutcome:
        path = root / rel
        if self.cancel_event.is_set():
            return _FileOutcome(rel, "", False, "skipped")
        try:
            prior = self.tool.query_signature_status(path, cert)
        except Exception as e:
            print(f"[sign][WARN] {rel}: signature status query failed: {e}")
            return _FileOutcome(rel, "", False, "unknown")

        if prior != "NotSigned" and not options.overwrite_signed:
            return _FileOutcome(rel, prior, False, "skipped")

        try:
            outcome = self.tool.sign(
                path,
                cert,
                options.timestamp_server,
                timeout=float(options.timeout_seconds),
                cancel_event=self.cancel_event,
            )
        except ToolTimeoutError as e:
            print(f"[sign][FAILED] {rel}: {e}")
            return _FileOutcome(rel, prior, True, "failed")
        except Exception as e:
            print(f"[sign][WARN] {rel}: unclassified signing error: {e}")
            return _FileOutcome(rel, prior, True, "unknown")

        if outcome == "Success":
            return _FileOutcome(rel, prior, True, "signed_new" if prior == "NotSigned" else "resigned")
        if outcome == "Failure":
            print(f"[sign][FAILED] {rel}")
            return _FileOutcome(rel, prior, True, "failed")
        return _FileOutcome(rel, prior, True, "unknown")
