"""Basecamp MCP server for bulk-loading markdown outlines as to-do lists.

Turns a pasted markdown outline into Basecamp to-do lists, groups and to-dos:
- basecamp_load: Parse an outline and create the matching hierarchy
- basecamp_projects / basecamp_campfires: Browse the connected account
- basecamp_create_*: Create single lists, groups or to-dos

Token: Passed via --token-file <path> and --account-id <id> at startup, or
obtained through /auth/login when running with --http.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
import parsy as P
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

logger = logging.getLogger("basecamp-mcp")

# =============================================================================
# Configuration
# =============================================================================

BASECAMP_API_HOST = "https://3.basecampapi.com"
LAUNCHPAD_BASE = "https://launchpad.37signals.com"
USER_AGENT = os.environ.get(
    "BASECAMP_USER_AGENT", "Basecamp Speed Loader (speed-loader@example.com)"
)

# Basecamp allows ~50 requests per 10 seconds per account
MIN_REQUEST_INTERVAL = 0.25  # seconds between request starts

# Retry configuration
MAX_RETRIES = 5
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 10.0  # seconds

# Stop following Link headers after this many pages
MAX_PAGES = 100

DEFAULT_LIST_NAME = "Tasks"
MAX_REPORTED_ERRORS = 10


# =============================================================================
# Errors
# =============================================================================


class BasecampError(Exception):
    """Base class for all errors raised by this module."""


class ConfigurationError(BasecampError):
    """OAuth settings or credentials are missing."""


class AuthExchangeError(BasecampError):
    """Token exchange or account lookup against Launchpad failed."""


class ApiError(BasecampError):
    """Non-success response from the Basecamp API."""

    def __init__(self, status_code: int, body: str, max_len: int = 300):
        self.status_code = status_code
        self.body = body
        detail = body[:max_len].strip()
        message = f"Basecamp API error {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RateLimitExceeded(ApiError):
    """Still throttled (429) after MAX_RETRIES retries."""

    def __init__(self, body: str = "", retries: int = MAX_RETRIES):
        super().__init__(429, body)
        self.retries = retries
        self.args = (f"Rate limit exceeded after {retries} retries",)


class MissingResourceError(BasecampError):
    """A resource the API should have returned is absent."""


# =============================================================================
# Outline Parser
# =============================================================================


@dataclass(frozen=True)
class TodoItem:
    """A single to-do."""
    content: str


@dataclass
class TodoGroup:
    """Named group of to-dos inside a list."""
    name: str
    items: list[TodoItem] = field(default_factory=list)


@dataclass
class TodoList:
    """Top-level to-do list. May hold direct items and groups side by side."""
    name: str
    description: Optional[str] = None
    groups: list[TodoGroup] = field(default_factory=list)
    items: list[TodoItem] = field(default_factory=list)

    def has_content(self) -> bool:
        # An empty group still keeps its list alive
        return bool(self.items or self.groups)

    def todo_count(self) -> int:
        return len(self.items) + sum(len(g.items) for g in self.groups)


LIST_HEADER_PATTERN = re.compile(r'^#\s+(.+)$')
GROUP_HEADER_PATTERN = re.compile(r'^##\s+(.+)$')
ITEM_PATTERN = re.compile(r'^[-*]\s+(.+)$')


def parse_outline(text: str) -> list[TodoList]:
    """Parse a markdown outline into to-do lists.

    Recognized lines (after trimming):
        # Name      starts a new list
        ## Name     starts a group in the current list
        - text      adds a to-do (``*`` works too)

    Anything else, including ``###`` and deeper headings, is ignored. Groups
    or to-dos that appear before any list header go into a default list
    named "Tasks". Lists with no to-dos and no groups are dropped.

    Args:
        text: Raw markdown text.

    Returns:
        Lists in source order. Never raises.
    """
    lists: list[TodoList] = []
    current_list: Optional[TodoList] = None
    current_group: Optional[TodoGroup] = None

    def ensure_list() -> TodoList:
        nonlocal current_list
        if current_list is None:
            current_list = TodoList(name=DEFAULT_LIST_NAME)
        return current_list

    # Only "\n" separates lines; other Unicode breaks stay inside the line
    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line:
            continue

        list_match = LIST_HEADER_PATTERN.match(line)
        if list_match:
            if current_list is not None and current_list.has_content():
                lists.append(current_list)
            current_list = TodoList(name=list_match.group(1).strip())
            current_group = None
            continue

        group_match = GROUP_HEADER_PATTERN.match(line)
        if group_match:
            current_group = TodoGroup(name=group_match.group(1).strip())
            ensure_list().groups.append(current_group)
            continue

        item_match = ITEM_PATTERN.match(line)
        if item_match:
            item = TodoItem(content=item_match.group(1).strip())
            if current_group is not None:
                current_group.items.append(item)
            else:
                ensure_list().items.append(item)

    if current_list is not None and current_list.has_content():
        lists.append(current_list)

    return lists


def render_outline(outline: list[TodoList]) -> str:
    """Render lists back to markdown that parse_outline reads identically.

    Direct to-dos are written before groups, otherwise they would be
    re-parsed into the last group.
    """
    lines: list[str] = []
    for todo_list in outline:
        if lines:
            lines.append("")
        lines.append(f"# {todo_list.name}")
        for item in todo_list.items:
            lines.append(f"- {item.content}")
        for group in todo_list.groups:
            lines.append(f"## {group.name}")
            for item in group.items:
                lines.append(f"- {item.content}")
    return "\n".join(lines)


# =============================================================================
# Link Header Parser (Parsy-based)
# =============================================================================


def _make_link_header_parser():
    """Build a parser for RFC 8288 Link headers.

    Returns a parser producing a list of (url, params) pairs, e.g.
    '<https://x/2>; rel="next", <https://x/9>; rel=last' ->
    [("https://x/2", {"rel": "next"}), ("https://x/9", {"rel": "last"})]

    Valueless params (``; crossorigin``) map to "". Empty list elements
    (``a, , b`` or a trailing comma) come out as None.
    """
    ws = P.regex(r'\s*')
    url = P.string('<') >> P.regex(r'[^>]*') << P.string('>')
    quoted = P.string('"') >> P.regex(r'[^"]*') << P.string('"')
    token = P.regex(r'[^\s;,="]+')

    param = P.seq(
        ws >> P.string(';') >> ws >> token.map(str.lower),
        (ws >> P.string('=') >> ws >> (quoted | token)).optional(""),
    ).map(tuple)

    link = P.seq(url, param.many().map(dict)).map(tuple)
    element = ws >> link.optional() << ws
    return element.sep_by(P.string(','))


_link_header_parser = _make_link_header_parser()


def parse_link_header(value: str) -> dict[str, str]:
    """Map each rel in a Link header to its URL.

    A rel with several space-separated values ("next last") maps each of
    them. The first link for a given rel wins.

    Returns:
        Dict of rel -> url, or {} if the header is missing or malformed.
    """
    if not value or not value.strip():
        return {}
    try:
        links = _link_header_parser.parse(value)
    except P.ParseError as e:
        logger.warning(f"Ignoring malformed Link header {value!r}: {e}")
        return {}

    rels: dict[str, str] = {}
    for url, params in filter(None, links):
        for rel in params.get("rel", "").lower().split():
            rels.setdefault(rel, url)
    return rels


# =============================================================================
# Rate-Limited Transport
# =============================================================================


def _decode_json(response: httpx.Response) -> Any:
    """Decode a successful response body, treating bad JSON as an API error."""
    try:
        return response.json()
    except ValueError as e:
        logger.warning(f"Invalid JSON in HTTP {response.status_code} response: {e}")
        raise ApiError(response.status_code, response.text or "invalid JSON body") from e


def _compute_retry_delay(retry_count: int, retry_after: Optional[str] = None) -> float:
    """Delay before the next attempt after a 429.

    Args:
        retry_count: Number of retries already made (0-indexed).
        retry_after: Raw Retry-After header value in seconds, if sent.

    Returns:
        Delay in seconds. Retry-After wins when it is a whole number of
        seconds, otherwise exponential backoff capped at RETRY_MAX_DELAY.
    """
    if retry_after is not None:
        value = retry_after.strip()
        # delay-seconds is 1*DIGIT; HTTP-dates, floats, "inf" and negatives fall back
        if value.isascii() and value.isdigit():
            return float(int(value))
        logger.debug(f"Unusable Retry-After {retry_after!r}, using backoff")
    return min(RETRY_BASE_DELAY * (2 ** retry_count), RETRY_MAX_DELAY)


class RateLimitedTransport:
    """HTTP access to one Basecamp account with request spacing and 429 retry.

    Every request, including retries, passes through a spacing gate that keeps
    request starts at least ``min_interval`` seconds apart. The gate state
    belongs to this instance only; share the instance to share the budget.
    """

    def __init__(
        self,
        access_token: str,
        account_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        min_interval: float = MIN_REQUEST_INTERVAL,
        user_agent: str = USER_AGENT,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = f"{BASECAMP_API_HOST}/{account_id}"
        self.account_id = str(account_id)
        self._access_token = access_token
        self._user_agent = user_agent
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = client is None
        self._min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: Optional[float] = None
        self._gate = asyncio.Lock()

    def _default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "User-Agent": self._user_agent,
            "Content-Type": "application/json",
        }

    def _resolve_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def relative_endpoint(self, url: str) -> str:
        """Strip this account's base URL so the result routes like an endpoint."""
        if url.startswith(self.base_url):
            return url[len(self.base_url):] or "/"
        return url

    async def _wait_for_slot(self) -> None:
        async with self._gate:
            if self._last_request_at is not None:
                elapsed = self._clock() - self._last_request_at
                if elapsed < self._min_interval:
                    await self._sleep(self._min_interval - elapsed)
            self._last_request_at = self._clock()

    async def send(
        self,
        method: str,
        endpoint: str,
        *,
        json: Optional[dict] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Send a request, retrying on 429.

        Args:
            method: HTTP method.
            endpoint: Path relative to the account (``/projects.json``) or an
                absolute URL.
            json: Optional JSON body.
            headers: Extra headers; these override the defaults.

        Returns:
            The successful response. The body is not decoded.

        Raises:
            RateLimitExceeded: Throttled on the initial attempt and all retries.
            ApiError: Any other non-2xx response.
        """
        url = self._resolve_url(endpoint)
        merged_headers = {**self._default_headers(), **(headers or {})}

        retry_count = 0
        while True:
            await self._wait_for_slot()
            response = await self._client.request(
                method, url, headers=merged_headers, json=json
            )

            if response.status_code == 429:
                if retry_count >= MAX_RETRIES:
                    raise RateLimitExceeded(response.text, retries=retry_count)
                delay = _compute_retry_delay(
                    retry_count, response.headers.get("Retry-After")
                )
                logger.warning(
                    f"Rate limited on {method} {endpoint}, waiting {delay:.1f}s "
                    f"(retry {retry_count + 1}/{MAX_RETRIES})"
                )
                await self._sleep(delay)
                retry_count += 1
                continue

            if not response.is_success:
                raise ApiError(response.status_code, response.text)

            return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RateLimitedTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


# =============================================================================
# Pagination
# =============================================================================


async def fetch_all_pages(
    transport: RateLimitedTransport,
    start_endpoint: str,
    max_pages: int = MAX_PAGES,
) -> list:
    """Collect every page of a paginated collection endpoint.

    Follows ``rel="next"`` links until none is left. Stops early (with a
    warning) after ``max_pages`` pages so a looping server cannot hang us.

    Returns:
        All records, concatenated in page order.
    """
    records: list = []
    endpoint = start_endpoint

    for _ in range(max_pages):
        response = await transport.send("GET", endpoint)
        page = _decode_json(response)
        if not isinstance(page, list):
            raise ApiError(response.status_code, f"expected a JSON array from {endpoint}")
        records.extend(page)

        next_url = parse_link_header(response.headers.get("Link", "")).get("next")
        if not next_url:
            return records
        endpoint = transport.relative_endpoint(next_url)

    logger.warning(
        f"Stopped paginating {start_endpoint} after {max_pages} pages "
        f"({len(records)} records)"
    )
    return records


# =============================================================================
# Basecamp API Client
# =============================================================================


class BasecampClient:
    """Typed Basecamp operations on top of a RateLimitedTransport."""

    def __init__(self, transport: RateLimitedTransport):
        self.transport = transport

    async def _get_json(self, endpoint: str) -> Any:
        response = await self.transport.send("GET", endpoint)
        return _decode_json(response)

    async def _post_json(self, endpoint: str, body: dict) -> dict:
        """POST and return the created record, which must carry an id."""
        response = await self.transport.send("POST", endpoint, json=body)
        created = _decode_json(response)
        if not isinstance(created, dict) or "id" not in created:
            raise ApiError(
                response.status_code,
                f"created record from {endpoint} has no id: {response.text}",
            )
        return created

    async def get_profile(self) -> dict:
        return await self._get_json("/my/profile.json")

    async def get_projects(self) -> list[dict]:
        projects = await fetch_all_pages(self.transport, "/projects.json")
        return sorted(projects, key=lambda p: p.get("name", ""))

    async def get_project(self, project_id: int) -> dict:
        return await self._get_json(f"/projects/{project_id}.json")

    @staticmethod
    def get_todoset_id(project: dict) -> int:
        """Find the to-do set id in a project's dock.

        Raises:
            MissingResourceError: The project has no todoset dock entry.
        """
        if not isinstance(project, dict):
            raise MissingResourceError("Project response is not an object")
        for entry in project.get("dock") or []:
            if entry.get("name") == "todoset":
                return entry["id"]
        raise MissingResourceError(
            f"No todoset found in project {project.get('id', '?')}"
        )

    async def get_campfires(self, project_id: int) -> list[dict]:
        chats = await fetch_all_pages(
            self.transport, f"/buckets/{project_id}/chats.json"
        )
        return sorted(chats, key=lambda c: c.get("title", ""))

    async def create_todo_list(
        self,
        project_id: int,
        todoset_id: int,
        name: str,
        description: Optional[str] = None,
    ) -> dict:
        body: dict[str, Any] = {"name": name}
        if description:
            body["description"] = description
        return await self._post_json(
            f"/buckets/{project_id}/todosets/{todoset_id}/todolists.json", body
        )

    async def create_todo_group(
        self, project_id: int, todolist_id: int, name: str
    ) -> dict:
        """Create a group. Basecamp models it as a nested to-do list."""
        return await self._post_json(
            f"/buckets/{project_id}/todolists/{todolist_id}/groups.json",
            {"name": name},
        )

    async def create_todo(
        self, project_id: int, container_id: int, content: str
    ) -> dict:
        """Create a to-do in a list or group.

        For grouped to-dos pass the group's id: groups are nested lists, and
        to-dos created against the parent list would not land in the group.
        """
        return await self._post_json(
            f"/buckets/{project_id}/todolists/{container_id}/todos.json",
            {"content": content},
        )


# =============================================================================
# Remote Hierarchy Builder
# =============================================================================

# Errors that fail a single branch of a build rather than the whole run
BRANCH_ERRORS = (ApiError, MissingResourceError, httpx.HTTPError)


class _BuildCancelled(Exception):
    pass


@dataclass
class BuildResult:
    """Outcome of creating an outline in Basecamp."""
    lists_created: int = 0
    groups_created: int = 0
    items_created: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def summary(self, max_errors: int = MAX_REPORTED_ERRORS) -> str:
        """Human-readable summary with at most ``max_errors`` error lines."""
        counts = (
            f"{self.lists_created} todo list(s) with {self.groups_created} groups "
            f"and {self.items_created} todos"
        )
        if self.ok:
            return f"Successfully created {counts}"

        if self.cancelled:
            lines = [f"Cancelled after creating {counts}"]
        else:
            lines = [f"Completed with {len(self.errors)} error(s). Created {counts}"]
        for error in self.errors[:max_errors]:
            lines.append(f"  err {error}")
        hidden = len(self.errors) - max_errors
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
        return "\n".join(lines)


ProgressCallback = Callable[[int, int, str], None]


def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise _BuildCancelled()


async def _create_item(
    client: BasecampClient,
    project_id: int,
    container_id: int,
    item: TodoItem,
    result: BuildResult,
    cancel_event: Optional[asyncio.Event],
) -> None:
    _check_cancelled(cancel_event)
    try:
        await client.create_todo(project_id, container_id, item.content)
    except BRANCH_ERRORS as e:
        logger.warning(f"Failed to create todo {item.content!r}: {e}")
        result.errors.append(f'Todo "{item.content}": {e}')
        return
    result.items_created += 1


async def _create_list_tree(
    client: BasecampClient,
    project_id: int,
    todoset_id: int,
    todo_list: TodoList,
    result: BuildResult,
    cancel_event: Optional[asyncio.Event],
) -> None:
    """Create one list, then its groups with their to-dos, then direct to-dos."""
    _check_cancelled(cancel_event)
    try:
        created_list = await client.create_todo_list(
            project_id, todoset_id, todo_list.name, todo_list.description
        )
    except BRANCH_ERRORS as e:
        logger.warning(f"Failed to create list {todo_list.name!r}: {e}")
        result.errors.append(f'List "{todo_list.name}": {e}')
        return
    result.lists_created += 1
    list_id = created_list["id"]
    logger.debug(f"Created list {todo_list.name!r} with ID {list_id}")

    for group in todo_list.groups:
        _check_cancelled(cancel_event)
        try:
            created_group = await client.create_todo_group(project_id, list_id, group.name)
        except BRANCH_ERRORS as e:
            logger.warning(f"Failed to create group {group.name!r}: {e}")
            result.errors.append(
                f'Group "{group.name}" in list "{todo_list.name}": {e} '
                f'({len(group.items)} todos skipped)'
            )
            continue
        result.groups_created += 1
        logger.debug(f"Created group {group.name!r} with ID {created_group['id']}")

        for item in group.items:
            await _create_item(
                client, project_id, created_group["id"], item, result, cancel_event
            )

    for item in todo_list.items:
        await _create_item(client, project_id, list_id, item, result, cancel_event)


async def _resolve_todoset(
    client: BasecampClient, project_id: int, result: BuildResult
) -> Optional[int]:
    try:
        project = await client.get_project(project_id)
        return client.get_todoset_id(project)
    except BRANCH_ERRORS as e:
        logger.warning(f"Cannot load project {project_id}: {e}")
        result.errors.append(f"Project {project_id}: {e}")
        return None


async def build_outline(
    client: BasecampClient,
    project_id: int,
    outline: list[TodoList],
    *,
    cancel_event: Optional[asyncio.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> BuildResult:
    """Create every list in an outline inside a Basecamp project.

    EXECUTION MODEL:
    Strictly sequential. A child needs its parent's id, and the shared
    transport spaces out all requests anyway.

    FAILURE SCOPE:
    A failed list skips its groups and to-dos; a failed group skips its
    to-dos; a failed to-do skips only itself. Each failure becomes one entry
    in ``errors`` and the build moves on.

    CANCELLATION:
    ``cancel_event`` is checked before each remote call. Anything already
    created stays in Basecamp.

    Args:
        client: Client for the target account.
        project_id: Basecamp project (bucket) id.
        outline: Lists from parse_outline.
        cancel_event: Optional event that stops the build when set.
        on_progress: Called as (index, total, list_name) before each list.

    Returns:
        BuildResult with created counts and error messages.
    """
    result = BuildResult()
    if not outline:
        return result

    try:
        _check_cancelled(cancel_event)
        todoset_id = await _resolve_todoset(client, project_id, result)
        if todoset_id is None:
            return result

        total = len(outline)
        for index, todo_list in enumerate(outline, 1):
            if on_progress is not None:
                on_progress(index, total, todo_list.name)
            await _create_list_tree(
                client, project_id, todoset_id, todo_list, result, cancel_event
            )
    except _BuildCancelled:
        logger.info("Build cancelled; already created entities are kept")
        result.cancelled = True

    logger.info(
        f"Build finished: {result.lists_created} lists, {result.groups_created} groups, "
        f"{result.items_created} todos, {len(result.errors)} errors"
    )
    return result


async def build_todo_list(
    client: BasecampClient,
    project_id: int,
    todo_list: TodoList,
    *,
    cancel_event: Optional[asyncio.Event] = None,
) -> BuildResult:
    """Create a single list with its groups and to-dos."""
    return await build_outline(
        client, project_id, [todo_list], cancel_event=cancel_event
    )


# =============================================================================
# OAuth (Launchpad)
# =============================================================================


def _oauth_setting(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"Missing OAuth configuration: {name} is not set")
    return value


def authorization_url() -> str:
    """Launchpad URL that starts the web_server OAuth grant."""
    params = urlencode({
        "type": "web_server",
        "client_id": _oauth_setting("BASECAMP_CLIENT_ID"),
        "redirect_uri": _oauth_setting("BASECAMP_REDIRECT_URI"),
    })
    return f"{LAUNCHPAD_BASE}/authorization/new?{params}"


async def exchange_code_for_token(
    code: str, client: Optional[httpx.AsyncClient] = None
) -> dict:
    """Exchange an authorization code for an access token.

    Returns:
        Launchpad token payload (access_token, refresh_token, expires_in).

    Raises:
        ConfigurationError: OAuth environment variables are missing.
        AuthExchangeError: Launchpad rejected the code.
    """
    payload = {
        "type": "web_server",
        "client_id": _oauth_setting("BASECAMP_CLIENT_ID"),
        "client_secret": _oauth_setting("BASECAMP_CLIENT_SECRET"),
        "redirect_uri": _oauth_setting("BASECAMP_REDIRECT_URI"),
        "code": code,
    }
    http = client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await http.post(
            f"{LAUNCHPAD_BASE}/authorization/token",
            json=payload,
            headers={"Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        raise AuthExchangeError(f"Failed to exchange authorization code: {e}") from e
    finally:
        if client is None:
            await http.aclose()

    if not response.is_success:
        raise AuthExchangeError(
            f"Failed to exchange authorization code (HTTP {response.status_code})"
        )
    data = response.json()
    if not data.get("access_token"):
        raise AuthExchangeError("Token response did not include an access_token")
    return data


async def get_user_accounts(
    access_token: str, client: Optional[httpx.AsyncClient] = None
) -> list[dict]:
    """List the accounts the token can access."""
    http = client or httpx.AsyncClient(timeout=30.0)
    try:
        response = await http.get(
            f"{LAUNCHPAD_BASE}/authorization.json",
            headers={"Authorization": f"Bearer {access_token}"},
        )
    except httpx.HTTPError as e:
        raise AuthExchangeError(f"Failed to get user accounts: {e}") from e
    finally:
        if client is None:
            await http.aclose()

    if not response.is_success:
        raise AuthExchangeError(
            f"Failed to get user accounts (HTTP {response.status_code})"
        )
    return response.json().get("accounts") or []


def select_basecamp_account(accounts: list[dict]) -> dict:
    """Pick the first Basecamp 3/4 (product "bc3") account."""
    for account in accounts:
        if account.get("product") == "bc3":
            return account
    raise AuthExchangeError("No Basecamp account found for this user")


# =============================================================================
# Credential Management
# =============================================================================

_access_token: Optional[str] = None
_account_id: Optional[str] = None
_client: Optional[BasecampClient] = None


def _set_credentials(access_token: str, account_id: str) -> Optional[BasecampClient]:
    """Install new credentials; the next tool call builds a fresh client.

    Returns:
        The client built for the previous credentials, if any. The caller
        must close it (``await stale.transport.aclose()``).
    """
    global _access_token, _account_id, _client
    stale = _client
    _access_token = access_token
    _account_id = str(account_id)
    _client = None
    return stale


def _get_client() -> BasecampClient:
    """Get or create the client for the loaded credentials.

    One transport is shared by all tools so they draw on the same
    per-account request budget.
    """
    global _client
    if not _access_token or not _account_id:
        raise ConfigurationError(
            "No Basecamp credentials. Pass --token-file and --account-id, "
            "or sign in via /auth/login in --http mode."
        )
    if _client is None:
        _client = BasecampClient(RateLimitedTransport(_access_token, _account_id))
    return _client


# =============================================================================
# Tool Output Helpers
# =============================================================================


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format an error line with an optional hint."""
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "no_credentials": "Start the server with --token-file and --account-id, or visit /auth/login.",
    "invalid_token": "Token is invalid or expired. Sign in again via /auth/login.",
    "rate_limited": "Basecamp is throttling this account. Wait a minute and try again.",
    "no_todoset": "Enable the To-dos tool for this project in Basecamp.",
    "no_lists": "Use '# List', '## Group' and '- todo' lines.",
}


def _api_error(e: Exception) -> str:
    """Map an exception from a single-shot tool call to an error string."""
    if isinstance(e, ConfigurationError):
        return _error("NO_CREDENTIALS", str(e), hint=HINTS["no_credentials"])
    if isinstance(e, RateLimitExceeded):
        return _error("RATE_LIMITED", str(e), hint=HINTS["rate_limited"])
    if isinstance(e, ApiError):
        if e.status_code == 401:
            return _error("INVALID_TOKEN", str(e), hint=HINTS["invalid_token"])
        if e.status_code == 404:
            return _error("NOT_FOUND", str(e))
        return _error("HTTP_ERROR", str(e))
    if isinstance(e, MissingResourceError):
        return _error("MISSING_RESOURCE", str(e), hint=HINTS["no_todoset"])
    return _error("UNEXPECTED", f"{type(e).__name__}: {e}")


def describe_outline(outline: list[TodoList]) -> str:
    """One line per list and group, for dry runs."""
    lines = []
    for todo_list in outline:
        lines.append(
            f"# {todo_list.name} ({len(todo_list.groups)} groups, "
            f"{todo_list.todo_count()} todos)"
        )
        for group in todo_list.groups:
            lines.append(f"  ## {group.name} ({len(group.items)} todos)")
    total_todos = sum(tl.todo_count() for tl in outline)
    lines.append("---")
    lines.append(f"{len(outline)} lists, {total_todos} todos")
    return "\n".join(lines)


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("basecamp-mcp", host="127.0.0.1", port=2053)


@mcp.tool()
async def basecamp_check_auth() -> str:
    """Verify Basecamp authentication and return the signed-in person."""
    try:
        client = _get_client()
        profile = await client.get_profile()
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    return (
        f"authenticated as '{profile.get('name', 'Unknown')}' "
        f"in account {client.transport.account_id}"
    )


@mcp.tool()
async def basecamp_projects() -> str:
    """List projects in the connected Basecamp account, sorted by name.

    Returns:
        One line per project: "<id>: <name>".
    """
    try:
        projects = await _get_client().get_projects()
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    if not projects:
        return "no projects"
    return "\n".join(f"{p['id']}: {p.get('name', '')}" for p in projects)


@mcp.tool()
async def basecamp_campfires(project_id: int) -> str:
    """List the chat rooms (Campfires) of a project, sorted by title.

    Args:
        project_id: Basecamp project id (see basecamp_projects).

    Returns:
        One line per chat: "<id>: <title>".
    """
    try:
        chats = await _get_client().get_campfires(project_id)
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    if not chats:
        return "no campfires"
    return "\n".join(f"{c['id']}: {c.get('title', '')}" for c in chats)


@mcp.tool()
async def basecamp_load(markdown: str, project_id: int, dry_run: bool = False) -> str:
    """Create to-do lists, groups and to-dos in a project from a markdown outline.

    Args:
        markdown: The outline. See format below.
        project_id: Basecamp project id (see basecamp_projects).
        dry_run: If True, only show what would be created.

    Format:
        # List name           new to-do list
        ## Group name         group inside the current list
        - To-do text          to-do in the current group, or the list
        * To-do text          same as "-"

        Other lines are ignored. To-dos before any "# " header go into a
        list named "Tasks". Lists without to-dos or groups are skipped.

    Example:
        # Design Phase
        - Create wireframes
        ## Review
        - Design mockups

    Returns:
        Summary of created counts plus one "err" line per failure.
    """
    outline = parse_outline(markdown)
    if not outline:
        return _error("NO_LISTS", "No todo lists found in markdown", hint=HINTS["no_lists"])

    if dry_run:
        return describe_outline(outline)

    try:
        client = _get_client()
    except ConfigurationError as e:
        return _api_error(e)

    def log_progress(index: int, total: int, name: str) -> None:
        logger.info(f"Creating list {index} of {total}: {name!r}")

    result = await build_outline(client, project_id, outline, on_progress=log_progress)
    return result.summary()


@mcp.tool()
async def basecamp_create_list(
    project_id: int, name: str, description: str | None = None
) -> str:
    """Create one empty to-do list in a project.

    Returns:
        "+<list id>" on success.
    """
    try:
        client = _get_client()
        project = await client.get_project(project_id)
        todoset_id = client.get_todoset_id(project)
        created = await client.create_todo_list(project_id, todoset_id, name, description)
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    return f"+{created['id']}"


@mcp.tool()
async def basecamp_create_group(project_id: int, todolist_id: int, name: str) -> str:
    """Create a group inside an existing to-do list.

    Returns:
        "+<group id>" on success. Use it as todolist_id for basecamp_create_todo
        to put to-dos in the group.
    """
    try:
        created = await _get_client().create_todo_group(project_id, todolist_id, name)
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    return f"+{created['id']}"


@mcp.tool()
async def basecamp_create_todo(project_id: int, todolist_id: int, content: str) -> str:
    """Create a to-do in a list or group.

    Returns:
        "+<todo id>" on success.
    """
    try:
        created = await _get_client().create_todo(project_id, todolist_id, content)
    except (BasecampError, httpx.HTTPError) as e:
        return _api_error(e)
    return f"+{created['id']}"


# =============================================================================
# HTTP Endpoints (/health, /auth/login, /auth/callback)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    return JSONResponse({
        "status": "ok",
        "token_loaded": _access_token is not None,
        "account_id": _account_id,
    })


async def login_endpoint(request: Request):
    """Redirect the browser to Launchpad to authorize this app."""
    try:
        return RedirectResponse(authorization_url())
    except ConfigurationError as e:
        logger.error(f"OAuth login error: {e}")
        return JSONResponse({"error": "Failed to initiate OAuth"}, status_code=500)


async def callback_endpoint(request: Request) -> JSONResponse:
    """Finish the OAuth grant and load the resulting credentials."""
    error = request.query_params.get("error")
    if error:
        return JSONResponse({"error": error}, status_code=400)
    code = request.query_params.get("code")
    if not code:
        return JSONResponse({"error": "missing_code"}, status_code=400)

    try:
        token_data = await exchange_code_for_token(code)
        accounts = await get_user_accounts(token_data["access_token"])
        account = select_basecamp_account(accounts)
    except (ConfigurationError, AuthExchangeError) as e:
        logger.error(f"OAuth error: {e}")
        return JSONResponse({"error": "oauth_failed", "detail": str(e)}, status_code=400)

    stale = _set_credentials(token_data["access_token"], str(account["id"]))
    if stale is not None:
        await stale.transport.aclose()
    logger.info(f"Signed in to Basecamp account {account['id']} ({account.get('name', '')})")
    return JSONResponse({
        "status": "authenticated",
        "account_id": str(account["id"]),
        "account_name": account.get("name"),
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Basecamp MCP server.

    Supports two transport modes:
    - stdio (default): needs --token-file and --account-id
    - http: standalone server on port 2053, credentials optional (use /auth/login)

    Usage:
        uv run basecamp-mcp --token-file secrets/token --account-id 999999
        uv run basecamp-mcp --http
    """
    import argparse

    parser = argparse.ArgumentParser(description="Basecamp MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing a Basecamp OAuth access token"
    )
    parser.add_argument(
        "--account-id",
        default=os.environ.get("BASECAMP_ACCOUNT_ID"),
        help="Basecamp account id (default: $BASECAMP_ACCOUNT_ID)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2053 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        if not token:
            logger.error("Token file is empty")
            raise SystemExit(1)
        if not args.account_id:
            logger.error("--account-id is required with --token-file")
            raise SystemExit(1)
        _set_credentials(token, args.account_id)
        logger.info(f"Basecamp token loaded from {token_path}")
    elif not args.http:
        logger.error("stdio mode needs --token-file and --account-id")
        raise SystemExit(1)

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])
        app.add_route("/auth/login", login_endpoint, methods=["GET"])
        app.add_route("/auth/callback", callback_endpoint, methods=["GET"])

        logger.info("Starting Basecamp MCP server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
