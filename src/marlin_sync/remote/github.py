"""GitHub adapter for the remote store.

One repository per space (``<space><suffix>``), one file per note under
the notes folder. The blob SHA GitHub reports for a file is the version
token.
"""
import base64
import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from marlin_sync.config import config
from marlin_sync.exceptions import UnauthenticatedError
from marlin_sync.models.schema import RateLimitInfo, ensure_timezone_aware
from marlin_sync.remote.base import RemoteStore
from marlin_sync.remote.results import (
    AlreadyExists,
    CreateRepositoryResult,
    DeleteResult,
    Deleted,
    FetchResult,
    Listing,
    ListRepositoriesResult,
    ListResult,
    NotFound,
    PutResult,
    QuotaExceeded,
    RemoteFile,
    Repositories,
    RepositoryInfo,
    TransientError,
    Unauthenticated,
    VersionConflict,
    Written,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return ensure_timezone_aware(
            datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        )
    except ValueError:
        return None


def rate_limit_from_headers(headers: httpx.Headers) -> Optional[RateLimitInfo]:
    """Read ``X-RateLimit-*`` headers, if all three are present."""
    try:
        return RateLimitInfo(
            limit=int(headers["x-ratelimit-limit"]),
            remaining=int(headers["x-ratelimit-remaining"]),
            reset=int(headers["x-ratelimit-reset"]),
        )
    except (KeyError, ValueError):
        return None


class GitHubRemoteStore(RemoteStore):
    """Remote store backed by the GitHub REST API.

    Args:
        owner: Account that owns the space repositories.
        token: Access token, or a callable returning the current one (so an
            identity provider can refresh it). A missing token makes every
            call return Unauthenticated without touching the network.
        api_url: API root, for GitHub Enterprise.
        notes_folder: Folder holding ``<note-id>.md`` files.
        repo_suffix: Suffix that marks a repository as a space.
        timeout: Per-request timeout in seconds.
        on_rate_limit: Called with the quota from every response that
            carries rate-limit headers.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        owner: Optional[str] = None,
        token: Union[str, TokenProvider, None] = None,
        api_url: Optional[str] = None,
        notes_folder: Optional[str] = None,
        repo_suffix: Optional[str] = None,
        timeout: Optional[float] = None,
        on_rate_limit: Optional[Callable[[RateLimitInfo], None]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.owner = owner or config.github_owner
        if callable(token):
            self._token_provider: TokenProvider = token
        else:
            static_token = token if token is not None else config.github_token
            self._token_provider = lambda: static_token
        self.base_url = (api_url or config.github_api_url).rstrip("/")
        self.notes_folder = (notes_folder or config.notes_folder).strip("/")
        self.repo_suffix = repo_suffix if repo_suffix is not None else config.repo_suffix
        self.timeout = timeout if timeout is not None else config.request_timeout
        self.on_rate_limit = on_rate_limit
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "User-Agent": f"{config.client_name}/{config.client_version}",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    # =========================================================================
    # Notes
    # =========================================================================

    def repo_name(self, space: str) -> str:
        return space if space.endswith(self.repo_suffix) else f"{space}{self.repo_suffix}"

    def note_path(self, note_id: str) -> str:
        return f"{self.notes_folder}/{note_id}.md"

    def _contents_url(self, space: str, note_id: str) -> str:
        return f"/repos/{self.owner}/{self.repo_name(space)}/contents/{self.note_path(note_id)}"

    def fetch(self, space: str, note_id: str) -> FetchResult:
        response = self._request("GET", self._contents_url(space, note_id))
        if not isinstance(response, httpx.Response):
            return response
        failure = self._classify(response)
        if failure is not None:
            return failure
        data = response.json()
        if data.get("encoding") == "base64":
            content = base64.b64decode(data.get("content", "")).decode("utf-8")
            return RemoteFile(content=content, version_token=data["sha"])
        # Files over 1 MB come back with encoding "none" and no content
        return self._fetch_blob(space, data["sha"])

    def _fetch_blob(self, space: str, sha: str) -> FetchResult:
        url = f"/repos/{self.owner}/{self.repo_name(space)}/git/blobs/{sha}"
        response = self._request("GET", url)
        if not isinstance(response, httpx.Response):
            return response
        failure = self._classify(response)
        if failure is not None:
            return failure
        data = response.json()
        encoding = data.get("encoding")
        if encoding == "base64":
            content = base64.b64decode(data.get("content", "")).decode("utf-8")
        elif encoding == "utf-8":
            content = data.get("content", "")
        else:
            return TransientError(message=f"unsupported blob encoding {encoding!r}")
        return RemoteFile(content=content, version_token=sha)

    def put(
        self,
        space: str,
        note_id: str,
        content: str,
        expected_token: Optional[str],
    ) -> PutResult:
        body: Dict[str, Any] = {
            "message": f"{'Update' if expected_token else 'Create'} note {note_id}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if expected_token:
            body["sha"] = expected_token
        response = self._request("PUT", self._contents_url(space, note_id), json=body)
        if not isinstance(response, httpx.Response):
            return response
        if response.status_code == 422:
            # GitHub answers a create over an existing file with 422
            # "sha wasn't supplied", and a stale sha with 409 or 422.
            return VersionConflict() if expected_token else AlreadyExists()
        failure = self._classify(response)
        if failure is not None:
            return failure
        return Written(version_token=response.json()["content"]["sha"])

    def delete(self, space: str, note_id: str, expected_token: str) -> DeleteResult:
        body = {"message": f"Delete note {note_id}", "sha": expected_token}
        response = self._request("DELETE", self._contents_url(space, note_id), json=body)
        if not isinstance(response, httpx.Response):
            return response
        if response.status_code == 422:
            return VersionConflict()
        failure = self._classify(response)
        if failure is not None:
            return failure
        return Deleted()

    def list(self, space: str) -> ListResult:
        url = f"/repos/{self.owner}/{self.repo_name(space)}/git/trees/HEAD"
        response = self._request("GET", url, params={"recursive": "1"})
        if not isinstance(response, httpx.Response):
            return response
        if response.status_code == 409:
            # Repository exists but has no commits yet
            return Listing(entries={})
        failure = self._classify(response)
        if failure is not None:
            return failure

        data = response.json()
        if data.get("truncated"):
            logger.warning(
                "Tree listing for %s was truncated; walking %s/ directly",
                space,
                self.notes_folder,
            )
            return self._list_notes_folder(space)
        return Listing(entries=self._note_entries(data.get("tree", []), f"{self.notes_folder}/"))

    def _list_notes_folder(self, space: str) -> ListResult:
        """List the notes folder one tree level at a time.

        A partial listing is never returned: missing entries would read as
        remote deletes.
        """
        base = f"/repos/{self.owner}/{self.repo_name(space)}/git/trees"
        tree_sha = "HEAD"
        for part in self.notes_folder.split("/") + [None]:
            response = self._request("GET", f"{base}/{tree_sha}")
            if not isinstance(response, httpx.Response):
                return response
            failure = self._classify(response)
            if failure is not None:
                return failure
            data = response.json()
            if data.get("truncated"):
                return TransientError(message="tree listing truncated")
            tree = data.get("tree", [])
            if part is None:
                return Listing(entries=self._note_entries(tree, ""))
            folder = next(
                (i for i in tree if i.get("path") == part and i.get("type") == "tree"), None
            )
            if folder is None:
                return Listing(entries={})
            tree_sha = folder["sha"]
        return Listing(entries={})

    @staticmethod
    def _note_entries(tree: List[Dict[str, Any]], prefix: str) -> Dict[str, str]:
        """Note ID -> blob SHA for ``<prefix><id>.md`` blobs directly under prefix."""
        entries: Dict[str, str] = {}
        for item in tree:
            path = item.get("path", "")
            if item.get("type") != "blob" or not path.startswith(prefix):
                continue
            name = path[len(prefix):]
            if "/" in name or not name.endswith(".md"):
                continue
            entries[name[:-3]] = item["sha"]
        return entries

    # =========================================================================
    # Quota and repositories
    # =========================================================================

    def rate_limit(self) -> Optional[RateLimitInfo]:
        response = self._request("GET", "/rate_limit")
        if isinstance(response, Unauthenticated):
            raise UnauthenticatedError()
        if not isinstance(response, httpx.Response):
            return None
        if response.status_code == 401:
            raise UnauthenticatedError("Access token was rejected")
        if response.status_code != 200:
            logger.warning("Rate limit probe returned HTTP %d", response.status_code)
            return None
        data = response.json()
        core = data.get("resources", {}).get("core") or data.get("rate")
        if not core:
            return None
        info = RateLimitInfo(
            limit=int(core["limit"]),
            remaining=int(core["remaining"]),
            reset=int(core["reset"]),
        )
        if self.on_rate_limit is not None:
            self.on_rate_limit(info)
        return info

    def create_repository(
        self, space: str, description: Optional[str] = None, private: bool = True
    ) -> CreateRepositoryResult:
        body = {
            "name": self.repo_name(space),
            "description": description or "",
            "private": private,
            "auto_init": True,
        }
        response = self._request("POST", "/user/repos", json=body)
        if not isinstance(response, httpx.Response):
            return response
        if response.status_code == 422:
            return AlreadyExists()
        failure = self._classify(response)
        if failure is not None:
            return failure
        return self._repository_info(response.json())

    def list_repositories(self) -> ListRepositoriesResult:
        repositories = []
        url: Optional[str] = "/user/repos"
        params: Optional[Dict[str, str]] = {"sort": "updated", "per_page": "100"}
        while url:
            response = self._request("GET", url, params=params)
            if not isinstance(response, httpx.Response):
                return response
            failure = self._classify(response)
            if failure is not None:
                return failure
            for repo in response.json():
                if repo.get("name", "").endswith(self.repo_suffix):
                    repositories.append(self._repository_info(repo))
            url = response.links.get("next", {}).get("url")
            params = None
        return Repositories(repositories=tuple(repositories))

    @staticmethod
    def _repository_info(data: Dict[str, Any]) -> RepositoryInfo:
        return RepositoryInfo(
            name=data["name"],
            description=data.get("description"),
            is_private=bool(data.get("private", True)),
            owner=(data.get("owner") or {}).get("login"),
            updated_at=_parse_timestamp(data.get("updated_at")),
        )

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(
        self, method: str, url: str, **kwargs: Any
    ) -> Union[httpx.Response, TransientError, Unauthenticated]:
        """Send a request, mapping transport failures to result variants."""
        token = self._token_provider()
        if not token:
            return Unauthenticated()
        try:
            response = self.client.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out: %s", method, url, e)
            return TransientError(message=f"timeout: {e}")
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            return TransientError(message=str(e))

        info = rate_limit_from_headers(response.headers)
        if info is not None and self.on_rate_limit is not None:
            self.on_rate_limit(info)
        logger.debug("%s %s -> %d", method, url, response.status_code)
        return response

    @staticmethod
    def _classify(
        response: httpx.Response,
    ) -> Union[None, NotFound, VersionConflict, QuotaExceeded, TransientError, Unauthenticated]:
        """Map a non-success status to a result variant; None on success."""
        status = response.status_code
        if status < 400:
            return None
        if status == 401:
            return Unauthenticated()
        if status in (403, 429):
            remaining = response.headers.get("x-ratelimit-remaining")
            if status == 429 or remaining == "0":
                reset = response.headers.get("x-ratelimit-reset")
                return QuotaExceeded(reset_epoch=int(reset) if reset else None)
            # Forbidden for a reason other than quota: the credential
            # lacks access, which needs re-authentication
            return Unauthenticated()
        if status == 404:
            return NotFound()
        if status == 409:
            return VersionConflict()
        if status >= 500:
            return TransientError(message=response.reason_phrase, status_code=status)
        return TransientError(
            message=f"unexpected HTTP {status}: {response.text[:200]}",
            status_code=status,
        )
