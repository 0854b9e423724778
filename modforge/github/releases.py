from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

import requests

GITHUB_API = "https://api.github.com"


def _github_api_headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "modforge-publisher",
    }


def _content_type(path: Path) -> str:
    if path.suffix.lower() == ".zip":
        return "application/zip"
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


class GitHubReleaseClient:
    """GitHub Releases over the REST API (requests).

    Implements the ReleaseClient contract used by the publisher.
    """

    def __init__(self, *, api_base: str = GITHUB_API, timeout: float = 30, upload_timeout: float = 120):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.upload_timeout = upload_timeout

    def _repo_url(self, owner: str, repo: str) -> str:
        return f"{self.api_base}/repos/{owner}/{repo}"

    def get_release_by_tag(self, owner: str, repo: str, tag: str, *, token: str) -> Optional[Dict[str, Any]]:
        r = requests.get(
            f"{self._repo_url(owner, repo)}/releases/tags/{tag}",
            headers=_github_api_headers(token),
            timeout=self.timeout,
        )
        if r.status_code == 200:
            return r.json()
        if r.status_code == 404:
            return None
        raise RuntimeError(f"GitHub API error fetching release by tag: {r.status_code}: {r.text[:2000]}")

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
        payload = {
            "tag_name": tag,
            "name": name,
            "draft": False,
            "prerelease": bool(prerelease),
            "generate_release_notes": bool(generate_release_notes),
        }
        r = requests.post(
            f"{self._repo_url(owner, repo)}/releases",
            headers=_github_api_headers(token),
            json=payload,
            timeout=self.timeout,
        )
        if r.status_code not in (201,):
            raise RuntimeError(f"GitHub API error creating release: {r.status_code}: {r.text[:2000]}")
        return r.json()

    def delete_asset(self, owner: str, repo: str, asset_id: int, *, token: str) -> None:
        r = requests.delete(
            f"{self._repo_url(owner, repo)}/releases/assets/{asset_id}",
            headers=_github_api_headers(token),
            timeout=self.timeout,
        )
        if r.status_code not in (204, 404):
            raise RuntimeError(f"GitHub API error deleting existing asset: {r.status_code}: {r.text[:2000]}")

    def upload_asset(self, release: Dict[str, Any], path: Path, *, token: str) -> Dict[str, Any]:
        upload_url = str(release.get("upload_url") or "")
        # Example: https://uploads.github.com/repos/{owner}/{repo}/releases/{id}/assets{?name,label}
        upload_url = upload_url.split("{")[0]
        if not upload_url:
            raise RuntimeError("GitHub release payload missing upload_url")

        headers = _github_api_headers(token)
        headers["Content-Type"] = _content_type(path)

        with path.open("rb") as fh:
            r = requests.post(
                upload_url,
                params={"name": path.name},
                headers=headers,
                data=fh,
                timeout=self.upload_timeout,
            )
        if r.status_code not in (201,):
            raise RuntimeError(f"GitHub API error uploading asset {path.name}: {r.status_code}: {r.text[:2000]}")
        return r.json()
