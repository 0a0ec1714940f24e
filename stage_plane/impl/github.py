"""
GitHub Git Data API remote store.

Uses the low-level blobs/trees/commits/refs endpoints so a whole change set
lands as one commit, regardless of how many files it touches.
"""

import base64
import logging
import re
import time
from typing import Any

import httpx

from stage_plane.base import Author, Baseline, RemoteStore, TreeEntry
from stage_plane.errors import (
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_REPO_PATTERN = re.compile(r"^([^/]+)/([^/]+)$")


def parse_repo(target: str) -> tuple[str, str]:
    """Split an 'owner/repo' identifier."""
    match = _REPO_PATTERN.match(target or "")
    if not match:
        raise ValidationError("Invalid repo format. Use 'owner/repo'")
    return match.group(1), match.group(2)


class GitHubRemoteStore(RemoteStore):
    """Remote store talking to the GitHub REST API with a personal access token."""

    BASE_URL = "https://api.github.com"
    API_VERSION = "2022-11-28"

    def __init__(
        self,
        token: str,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the store.

        Args:
            token: GitHub API token with contents write permission
            client: Preconfigured HTTP client (tests pass one with a mock transport)
            timeout: Request timeout in seconds
        """
        self.token = token
        self._client = client or httpx.Client(
            base_url=self.BASE_URL,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.API_VERSION,
        }

    def request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a GitHub API request.

        Args:
            method: HTTP method (GET, POST, PATCH)
            path: API path (without base URL)
            data: Request body data
            params: Query parameters

        Returns:
            Decoded JSON response body

        Raises:
            StagePlaneError: Subclass matching the failure
        """
        try:
            response = self._client.request(
                method, f"/{path}", json=data, params=params, headers=self._headers()
            )
        except httpx.RequestError as e:
            error_msg = f"GitHub API request error: {e}"
            logger.error(error_msg)
            raise TransportError(error_msg)

        return self._process_response(response, method, path)

    def _process_response(self, response: httpx.Response, method: str, path: str) -> dict[str, Any]:
        """Decode a successful response or translate the failure.

        Args:
            response: HTTP response object
            method: HTTP method used
            path: Request path

        Returns:
            Response data as dict or empty dict
        """
        status = response.status_code
        if status in (200, 201):
            logger.debug(f"GitHub API {method} {path} successful (status: {status})")
            if not response.content:
                return {}
            try:
                payload = response.json()
            except ValueError:
                raise TransportError(f"GitHub API {method} {path} returned a body that is not JSON")
            if not isinstance(payload, dict):
                raise TransportError(f"GitHub API {method} {path} returned an unexpected body")
            return payload

        message = self._error_message(response)
        if self._is_rate_limited(response):
            raise RateLimitedError(
                f"GitHub API rate limit exceeded: {message}",
                retry_after=self._retry_after(response),
            )
        if status == 404:
            raise NotFoundError(f"GitHub resource not found: {path}")
        if status == 409:
            raise ConflictError(f"Conflict: {message}")
        if status in (401, 403):
            raise TransportError(f"GitHub authentication failed (status {status}): {message}")

        error_msg = f"GitHub API request failed (status {status}): {message}"
        logger.error(error_msg)
        raise TransportError(error_msg)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if isinstance(payload, dict):
            return str(payload.get("message", response.text))
        return response.text

    @staticmethod
    def _value(data: dict[str, Any], *keys: str) -> str:
        """Dig a string out of a response body; a missing field is a transport error."""
        value: Any = data
        for key in keys:
            if not isinstance(value, dict) or key not in value:
                value = None
                break
            value = value[key]
        if not isinstance(value, str):
            raise TransportError(f"Unexpected GitHub response: no '{'.'.join(keys)}' field")
        return value

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        retry_after = response.headers.get("retry-after")
        if retry_after is not None:
            try:
                return float(retry_after)
            except ValueError:
                return None
        reset = response.headers.get("x-ratelimit-reset")
        if reset is not None:
            try:
                return max(0.0, float(reset) - time.time())
            except ValueError:
                return None
        return None

    def _repo_path(self, target: str) -> str:
        owner, repo = parse_repo(target)
        return f"repos/{owner}/{repo}"

    def _ref_sha(self, target: str, ref: str) -> str:
        try:
            data = self.request("GET", f"{self._repo_path(target)}/git/ref/heads/{ref}")
        except NotFoundError:
            raise NotFoundError(f"Branch '{ref}' not found in {target}")
        return self._value(data, "object", "sha")

    def read_baseline(self, target: str, ref: str) -> Baseline:
        repo_path = self._repo_path(target)
        head = self._ref_sha(target, ref)
        commit = self.request("GET", f"{repo_path}/git/commits/{head}")
        root_tree = self._value(commit, "tree", "sha")

        listing = self.request("GET", f"{repo_path}/git/trees/{root_tree}", params={"recursive": "1"})
        if listing.get("truncated"):
            raise TransportError(f"Tree listing for {target}@{ref} was truncated by GitHub")

        entries = {}
        items = listing.get("tree")
        if not isinstance(items, list):
            raise TransportError(f"Unexpected GitHub response: no tree listing for {target}@{ref}")
        for item in items:
            if not isinstance(item, dict) or item.get("type") == "tree":
                continue
            path = self._value(item, "path")
            entries[path] = TreeEntry(
                path, self._value(item, "sha"), item.get("mode", "100644"), item.get("type", "blob")
            )
        return Baseline(head_revision=head, root_tree=root_tree, entries=entries)

    def write_blob(self, target: str, content: bytes) -> str:
        data = self.request(
            "POST",
            f"{self._repo_path(target)}/git/blobs",
            data={"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"},
        )
        return self._value(data, "sha")

    def read_blob(self, target: str, object_ref: str) -> bytes:
        data = self.request("GET", f"{self._repo_path(target)}/git/blobs/{object_ref}")
        return base64.b64decode(data.get("content", ""))

    def create_tree(self, target: str, entries: list[TreeEntry]) -> str:
        # no base_tree: the listing is complete, so anything missing is deleted
        tree = [
            {"path": entry.path, "mode": entry.mode, "type": entry.type, "sha": entry.object_ref}
            for entry in entries
        ]
        data = self.request("POST", f"{self._repo_path(target)}/git/trees", data={"tree": tree})
        return self._value(data, "sha")

    def create_commit(
        self,
        target: str,
        tree: str,
        parents: list[str],
        message: str,
        author: Author,
    ) -> str:
        identity = {"name": author.name, "email": author.email}
        data = self.request(
            "POST",
            f"{self._repo_path(target)}/git/commits",
            data={
                "message": message,
                "tree": tree,
                "parents": parents,
                "author": identity,
                "committer": identity,
            },
        )
        return self._value(data, "sha")

    def update_ref(self, target: str, ref: str, revision: str, expected: str) -> None:
        # The refs API has no compare-and-swap. Check the tip first, then rely on
        # force=false: the new commit's parent is `expected`, so the update is
        # rejected as a non fast-forward if anyone moved the branch meanwhile.
        try:
            current = self._ref_sha(target, ref)
        except TransportError as e:
            # nothing has been sent yet
            raise TransportError(
                f"Could not read {ref} before updating it: {e.message}", ambiguous=False
            )
        if current != expected:
            raise ConflictError(
                f"Branch '{ref}' moved from {expected[:7]} to {current[:7]}. "
                f"Repository has been updated. Please refresh and try again."
            )

        try:
            self.request(
                "PATCH",
                f"{self._repo_path(target)}/git/refs/heads/{ref}",
                data={"sha": revision, "force": False},
            )
        except TransportError as e:
            if "fast forward" in e.message.lower():
                raise ConflictError(
                    "Conflict: Repository has been updated. Please refresh and try again."
                )
            raise


def create_github_remote_store(token: str, client: httpx.Client | None = None) -> GitHubRemoteStore:
    return GitHubRemoteStore(token, client=client)
