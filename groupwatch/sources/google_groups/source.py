"""
Google Workspace source: Admin Directory groups + Groups Settings API.

Talks to the REST endpoints directly through google-auth's AuthorizedSession
(a requests session that attaches and refreshes the bearer token), so the
ETag headers and status codes stay under our control:

  - GET   admin/directory/v1/groups?domain=...   (paginated, If-None-Match)
  - GET   groups/v1/groups/<email>?alt=json
  - PATCH groups/v1/groups/<email>
"""

import json
import logging
import os
import time
from pathlib import Path
from urllib.parse import quote

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from groupwatch.engine.base import (
    DirectoryListing,
    ResolvedParams,
    SourceConfig,
    SourceDefinition,
)
from groupwatch.engine.engine import RateLimiter

logger = logging.getLogger(__name__)

# ============================================================================
# Constants & Exceptions
# ============================================================================

DIRECTORY_API_URL = "https://admin.googleapis.com/admin/directory/v1/groups"
GROUPS_SETTINGS_API_URL = "https://www.googleapis.com/groups/v1/groups"

SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.group.readonly",
    "https://www.googleapis.com/auth/apps.groups.settings",
]

PAGE_SIZE = 200

# Policy every group is checked against. The keys double as the tracked
# (business) keys for change detection.
EXPECTED_SETTINGS = {
    "whoCanPostMessage": "ANYONE_CAN_POST",
    "whoCanViewMembership": "ALL_IN_DOMAIN_CAN_VIEW",
    "whoCanViewGroup": "ALL_IN_DOMAIN_CAN_VIEW",
    "whoCanModerateContent": "OWNERS_AND_MANAGERS",
    "whoCanInvite": "ALL_MANAGERS_CAN_INVITE",
    "whoCanJoin": "CAN_REQUEST_TO_JOIN",
    "whoCanContactOwner": "ANYONE_CAN_CONTACT",
    "whoCanViewConversations": "ALL_IN_DOMAIN_CAN_VIEW",
}

EXCLUDED_KEYS = ("etag",)

_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


class GroupNotFound(Exception):
    """Raised when the API answers 404 for a group."""

    pass


class WorkspaceApiError(Exception):
    """Non-retryable API failure (4xx other than 404, unparseable bodies)."""

    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status


class _TransientApiError(WorkspaceApiError):
    pass


# ============================================================================
# Auth
# ============================================================================


def build_session(
    credentials_file: str,
    admin_email: str | None = None,
    scopes: list[str] | None = None,
) -> AuthorizedSession:
    """
    Service-account session with domain-wide delegation.

    The directory and settings APIs only answer for an impersonated admin,
    so ``admin_email`` is required in practice.
    """
    creds = service_account.Credentials.from_service_account_file(
        credentials_file, scopes=scopes or SCOPES
    )
    if admin_email:
        creds = creds.with_subject(admin_email)
    return AuthorizedSession(creds)


# ============================================================================
# HTTP
# ============================================================================


class GoogleWorkspaceClient:
    """Thin REST client with retry, backoff and rate limiting."""

    def __init__(
        self,
        session: requests.Session,
        requests_per_second: float = 5,
        max_retries: int = 3,
        initial_delay: float = 1,
        backoff_factor: float = 2,
        timeout: int = 60,
    ):
        self.session = session
        self.rate_limiter = RateLimiter(requests_per_second)
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.timeout = timeout

    def _request_with_retry(
        self,
        method: str,
        url: str,
        params: dict | None = None,
        payload: dict | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """Send one request, retrying connection errors, 429 and 5xx with backoff."""
        delay = self.initial_delay
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                with self.rate_limiter.acquire():
                    resp = self.session.request(
                        method,
                        url,
                        params=params,
                        json=payload,
                        headers=headers,
                        timeout=self.timeout,
                    )

                status = resp.status_code
                if status == 404:
                    raise GroupNotFound(f"Not found: {url}")
                if status in _RETRY_STATUSES:
                    raise _TransientApiError(status, resp.text[:300])
                if status != 304 and not 200 <= status < 300:
                    raise WorkspaceApiError(status, resp.text[:300])

                if attempt > 0:
                    logger.info(f"Request succeeded on attempt {attempt + 1}")
                return resp

            except (GroupNotFound, WorkspaceApiError) as e:
                if not isinstance(e, _TransientApiError):
                    raise
                last_exception = e
            except (requests.RequestException, OSError) as e:
                last_exception = e

            if attempt < self.max_retries:
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries + 1}): "
                    f"{last_exception}. Retrying in {delay}s..."
                )
                time.sleep(delay)
                delay *= self.backoff_factor
            else:
                logger.error(f"Request failed after {self.max_retries + 1} attempts: {last_exception}")

        raise last_exception or RuntimeError("Request failed with no recorded exception")

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        text = resp.text or ""
        if not text.strip() or text.lstrip().startswith("<"):
            raise WorkspaceApiError(resp.status_code, f"Unexpected response body: {text[:300]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise WorkspaceApiError(resp.status_code, f"Invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise WorkspaceApiError(resp.status_code, f"Unexpected response type: {type(data)}")
        return data

    def list_groups(self, domain: str, etag: str | None = None) -> DirectoryListing | None:
        """
        Fetch every group in ``domain``, following nextPageToken.

        Returns None when ``etag`` still matches (HTTP 304 on the first page).
        """
        groups = []
        new_etag = None
        page_token = None

        while True:
            params = {"domain": domain, "maxResults": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            headers = {"If-None-Match": etag} if etag and not page_token else None

            resp = self._request_with_retry("GET", DIRECTORY_API_URL, params=params, headers=headers)
            if resp.status_code == 304:
                logger.info(f"Directory listing for {domain} not modified")
                return None

            data = self._json(resp)
            new_etag = new_etag or data.get("etag")
            page = data.get("groups") or []
            groups.extend(page)
            logger.debug(f"  Got {len(page)} groups (total so far: {len(groups)})")

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Fetched {len(groups)} groups for {domain}")
        return DirectoryListing(groups=groups, etag=new_etag)

    def get_group_settings(self, email: str) -> dict:
        resp = self._request_with_retry(
            "GET", f"{GROUPS_SETTINGS_API_URL}/{quote(email)}", params={"alt": "json"}
        )
        return self._json(resp)

    def patch_group_settings(self, email: str, payload: dict) -> dict:
        resp = self._request_with_retry(
            "PATCH",
            f"{GROUPS_SETTINGS_API_URL}/{quote(email)}",
            params={"alt": "json"},
            payload=payload,
        )
        return self._json(resp)


# ============================================================================
# Normalization & policy
# ============================================================================


def normalize_directory_group(group: dict) -> dict:
    return {
        "email": group.get("email"),
        "name": group.get("name"),
        "description": group.get("description"),
        "directMembersCount": int(group.get("directMembersCount") or 0),
        "adminCreated": bool(group.get("adminCreated") or False),
        "etag": group.get("etag") or "Not Found",
    }


def load_policy(path: str | Path | None) -> dict:
    """
    Expected settings from a JSON object file, or EXPECTED_SETTINGS when
    no path is given.
    """
    if not path:
        return dict(EXPECTED_SETTINGS)

    try:
        policy = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Could not read policy file {path}: {e}") from e

    if not isinstance(policy, dict) or not policy:
        raise ValueError(f"Policy file {path} must hold a non-empty JSON object")
    for key, value in policy.items():
        if isinstance(value, (dict, list)):
            raise ValueError(f"Policy value for {key} must be a scalar")
    return policy


# ============================================================================
# Source Definition
# ============================================================================


def make_google_source(client: GoogleWorkspaceClient) -> SourceDefinition:
    return SourceDefinition(
        source_key="google_groups",
        list_groups_fn=client.list_groups,
        normalize_fn=normalize_directory_group,
        get_settings_fn=client.get_group_settings,
        patch_settings_fn=client.patch_group_settings,
        invalid_entry_exception=GroupNotFound,
    )


# ============================================================================
# Source Config (CLI / orchestration)
# ============================================================================


def _split_csv(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class GoogleGroupsConfig(SourceConfig):
    def __init__(self):
        super().__init__(source_key="google_groups")

    def add_args(self, parser):
        parser.add_argument("--domain", help="Workspace domain (env: WORKSPACE_DOMAIN)")
        parser.add_argument(
            "--admin-email", help="Admin to impersonate (env: WORKSPACE_ADMIN_EMAIL)"
        )
        parser.add_argument(
            "--credentials",
            help="Service account JSON file (env: GOOGLE_APPLICATION_CREDENTIALS)",
        )
        parser.add_argument("--policy", help="JSON file with expected group settings")
        parser.add_argument("--whitelist", help="Comma-separated terms groups must match")
        parser.add_argument("--blacklist", help="Comma-separated terms that exclude groups")
        parser.add_argument("--groups", help="Comma-separated group emails to check")

    def resolve(self, args):
        domain = args.domain or os.environ.get("WORKSPACE_DOMAIN")
        if not domain:
            raise ValueError("domain is required (provide --domain or set WORKSPACE_DOMAIN)")

        source = None
        if not getattr(args, "manual", False):
            credentials = args.credentials or os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
            if not credentials:
                raise ValueError(
                    "credentials are required (provide --credentials or set "
                    "GOOGLE_APPLICATION_CREDENTIALS)"
                )
            admin_email = args.admin_email or os.environ.get("WORKSPACE_ADMIN_EMAIL")
            session = build_session(credentials, admin_email)
            client = GoogleWorkspaceClient(session, requests_per_second=args.rate)
            source = make_google_source(client)

        return ResolvedParams(
            domain=domain,
            scope_key=domain,
            expected_settings=load_policy(args.policy),
            source=source,
            excluded_keys=EXCLUDED_KEYS,
            whitelist=_split_csv(args.whitelist),
            blacklist=_split_csv(args.blacklist),
            group_emails=_split_csv(args.groups),
        )


GOOGLE_GROUPS_CONFIG = GoogleGroupsConfig()
