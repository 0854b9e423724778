from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..infra.contracts import FeedClient, ReleaseClient
from ..infra.errors import NotConfiguredError, ToolNotAvailableError
from ..infra.models import (
    PACKED_ARTEFACT_KINDS,
    ArtefactResult,
    Plan,
    PublishResult,
    PublishSegment,
    RepositoryCredential,
)
from ..utils.tokens import replace_path_tokens
from .versioning import compare_versions

AUTO_TOOL_ORDER: Tuple[str, ...] = ("PSResourceGet", "PowerShellGet")


def release_tag_for(publish: PublishSegment, plan: Plan) -> str:
    if publish.overwrite_tag_name:
        return replace_path_tokens(publish.overwrite_tag_name, plan.module_name, plan.resolved_version, plan.prerelease)
    return f"v{plan.version_with_prerelease}"


def release_assets_for(publish: PublishSegment, artefacts: Sequence[ArtefactResult]) -> List[Path]:
    """Successful packed artefacts; restricted to the publish id when one is set."""
    out: List[Path] = []
    for a in artefacts:
        if not a.succeeded or a.kind not in PACKED_ARTEFACT_KINDS:
            continue
        if publish.id and a.id != publish.id:
            continue
        out.append(Path(a.output_path))
    return out


def _secret_value(publish: PublishSegment) -> Optional[str]:
    if publish.api_key:
        return publish.api_key.value
    return None


class Publisher:
    """Publish one destination. ``publish`` never raises; failures are results."""

    def __init__(self, feed_client: Optional[FeedClient] = None, release_client: Optional[ReleaseClient] = None):
        self.feed_client = feed_client
        self.release_client = release_client

    def publish(
        self,
        publish: PublishSegment,
        plan: Plan,
        staging_path: Path,
        artefacts: Sequence[ArtefactResult] = (),
    ) -> PublishResult:
        if publish.destination == "GitHub":
            return self._publish_github(publish, plan, artefacts)
        return self._publish_repository(publish, plan, Path(staging_path))

    # Package feed

    def _publish_repository(self, publish: PublishSegment, plan: Plan, staging_path: Path) -> PublishResult:
        name = publish.feed_name
        api_key = _secret_value(publish)
        repo = publish.repository
        credential: Optional[RepositoryCredential] = repo.credential if repo is not None else None
        base = PublishResult(destination="Repository", id=publish.id, repository_name=name)

        if name.lower() == "psgallery" and not api_key:
            return self._failed(base, "PSGallery requires an API key")
        if not api_key and credential is None:
            return self._failed(base, f"repository {name} requires an API key or a credential")
        if self.feed_client is None:
            return self._failed(base, str(NotConfiguredError("no feed client configured")))

        tools = AUTO_TOOL_ORDER if publish.tool == "Auto" else (publish.tool,)
        last_error = ""
        for i, tool in enumerate(tools):
            try:
                return self._publish_with_tool(publish, plan, staging_path, base, tool, api_key, credential)
            except ToolNotAvailableError as e:
                last_error = str(e)
                if i + 1 < len(tools):
                    print(f"[publish][WARN] {tool} not available, falling back to {tools[i + 1]}: {e}")
                    continue
            except Exception as e:
                return self._failed(base, str(e))
        return self._failed(base, last_error or "no publishing tool available")

    def _publish_with_tool(
        self,
        publish: PublishSegment,
        plan: Plan,
        staging_path: Path,
        base: PublishResult,
        tool: str,
        api_key: Optional[str],
        credential: Optional[RepositoryCredential],
    ) -> PublishResult:
        feed = self.feed_client
        if feed is None:
            raise NotConfiguredError("publishing to a repository needs a feed client")
        name = base.repository_name
        repo = publish.repository
        created = False
        unregistered = False
        try:
            if repo is not None and repo.ensure_registered and repo.has_uris:
                created = feed.ensure_registered(name, repo, tool=tool)
                if created:
                    print(f"[publish] registered feed {name} ({tool})")
            result = self._push(feed, plan, staging_path, base, tool, api_key, credential, force=publish.force)
        finally:
            if created and repo is not None and repo.unregister_after_use:
                try:
                    feed.unregister(name, tool=tool)
                    unregistered = True
                    print(f"[publish] unregistered feed {name}")
                except Exception as e:
                    print(f"[publish][WARN] could not unregister feed {name}: {e}")
        return replace(result, repository_created=created, repository_unregistered=unregistered)

    def _push(
        self,
        feed: FeedClient,
        plan: Plan,
        staging_path: Path,
        base: PublishResult,
        tool: str,
        api_key: Optional[str],
        credential: Optional[RepositoryCredential],
        *,
        force: bool,
    ) -> PublishResult:
        name = base.repository_name
        if not force:
            remote = feed.find_latest_version(
                plan.module_name, repository=name, prerelease=bool(plan.prerelease), credential=credential
            )
            if remote:
                cmp = compare_versions(plan.version_with_prerelease, remote)
                if cmp == 0:
                    print(f"[publish][SKIP] {plan.module_name} {remote} already on {name}")
                    return replace(base, status="AlreadyPublished", message=f"version {remote} already published")
                if cmp < 0:
                    return self._failed(base, f"{name} already has newer version {remote} than {plan.version_with_prerelease}")

        feed.publish(staging_path, repository_name=name, api_key=api_key, credential=credential, tool=tool)
        print(f"[publish][OK] {plan.module_name} {plan.version_with_prerelease} -> {name} ({tool})")
        return replace(base, status="Published")

    # Release host

    def _publish_github(self, publish: PublishSegment, plan: Plan, artefacts: Sequence[ArtefactResult]) -> PublishResult:
        owner = publish.user_name.strip()
        repo = publish.repository_name.strip() or plan.module_name
        tag = release_tag_for(publish, plan)
        is_pre = bool(plan.prerelease) and not publish.do_not_mark_as_prerelease
        token = _secret_value(publish)
        assets = release_assets_for(publish, artefacts)
        base = PublishResult(
            destination="GitHub",
            id=publish.id,
            repository_name=repo,
            user_name=owner,
            tag_name=tag,
            is_prerelease=is_pre,
            asset_paths=tuple(str(p) for p in assets),
        )

        if not owner:
            return self._failed(base, "GitHub publishing requires userName")
        if not token:
            return self._failed(base, "GitHub publishing requires an API key")
        if not assets:
            return self._failed(base, "no packed artefacts to attach")
        if self.release_client is None:
            return self._failed(base, str(NotConfiguredError("no release client configured")))

        client = self.release_client
        try:
            existing = client.get_release_by_tag(owner, repo, tag, token=token)
            if existing is not None and not publish.force:
                print(f"[publish][SKIP] release {tag} already exists on {owner}/{repo}")
                return replace(
                    base,
                    status="AlreadyPublished",
                    message=f"release {tag} already exists",
                    release_url=str(existing.get("html_url") or ""),
                )

            release = existing
            if release is None:
                release = client.create_release(
                    owner,
                    repo,
                    token=token,
                    tag=tag,
                    name=tag,
                    prerelease=is_pre,
                    generate_release_notes=publish.generate_release_notes,
                )

            current = {str(a.get("name")): a.get("id") for a in (release.get("assets") or [])}
            for path in assets:
                asset_id = current.get(path.name)
                if asset_id is not None:
                    client.delete_asset(owner, repo, int(asset_id), token=token)
                client.upload_asset(release, path, token=token)
        except Exception as e:
            return self._failed(base, str(e))

        print(f"[publish][OK] {owner}/{repo} {tag} ({len(assets)} asset(s))")
        return replace(base, status="Published", release_url=str(release.get("html_url") or ""))

    @staticmethod
    def _failed(base: PublishResult, message: str) -> PublishResult:
        print(f"[publish][FAILED] {base.destination} {base.repository_name}: {message}")
        return replace(base, status="Failed", message=message)
