from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from plansheet_core import (
    AmbiguousPlan,
    AmbiguousSelection,
    AuthenticationFailed,
    FetchFailed,
    MalformedPlanData,
    NoEligibleService,
    NoPlanFound,
    NoSelectionMade,
    PlanSummary,
    ServiceDetail,
    ServiceSummary,
    clean_text,
    decode_service_detail,
    decode_service_list,
    parse_instant,
    warn,
)

HTTP_TIMEOUT = 30
TOKEN_SKEW = timedelta(seconds=60)


def _http_json(url: str, method: str = "GET", payload: Optional[dict] = None, headers: Optional[dict] = None) -> object:
    data = None
    req_headers = {"Accept": "application/json"}
    if headers:
        req_headers.update(headers)
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        req_headers["Content-Type"] = "application/json"
    req = urllib.request.Request(url, data=data, method=method, headers=req_headers)
    with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as resp:
        raw = resp.read().decode("utf-8", "ignore")
    return json.loads(raw or "{}")


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime

    def valid_at(self, now: datetime) -> bool:
        return bool(self.token) and now + TOKEN_SKEW < self.expires_at


def _token_cache_key(api_base: str, username: str) -> str:
    return f"{api_base.rstrip('/')}|{username}"


def _load_token_cache(path: Optional[Path]) -> Dict[str, object]:
    if not path or not path.exists() or not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _save_token_cache(path: Optional[Path], cache: Dict[str, object]) -> None:
    if not path:
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(cache, indent=2), encoding="utf-8")
    except OSError as exc:
        warn(f"could not write token cache {path}: {exc}")


def _cached_token(path: Optional[Path], key: str, now: datetime) -> Optional[AccessToken]:
    entry = _load_token_cache(path).get(key)
    if not isinstance(entry, dict):
        return None
    try:
        token = AccessToken(clean_text(entry.get("token")), parse_instant(entry.get("expires_at"), "Cached token expiry"))
    except MalformedPlanData:
        return None
    return token if token.valid_at(now) else None


def authenticate(
    api_base: str,
    username: str,
    password: str,
    token_cache: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> AccessToken:
    """
    Exchange credentials for a bearer token. A still-valid token from the
    cache file is reused instead of logging in again.
    """
    now = now or datetime.now(timezone.utc)
    key = _token_cache_key(api_base, username)
    cached = _cached_token(token_cache, key, now)
    if cached:
        return cached

    url = f"{api_base.rstrip('/')}/auth/token"
    try:
        reply = _http_json(url, method="POST", payload={"username": username, "password": password})
    except urllib.error.HTTPError as exc:
        raise AuthenticationFailed(f"Login for {username!r} at {url} failed: HTTP {exc.code}") from exc
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise AuthenticationFailed(f"Login for {username!r} at {url} failed: {exc}") from exc

    body = reply.get("data", reply) if isinstance(reply, dict) else {}
    if not isinstance(body, dict):
        body = {}
    token = clean_text(body.get("access_token") or body.get("token"))
    if not token:
        raise AuthenticationFailed(f"Login for {username!r} at {url} returned no token")
    if body.get("expires_at"):
        try:
            expires_at = parse_instant(body.get("expires_at"), "Token expiry")
        except MalformedPlanData as exc:
            raise AuthenticationFailed(str(exc)) from exc
    else:
        try:
            expires_at = now + timedelta(seconds=int(body.get("expires_in") or 3600))
        except (TypeError, ValueError) as exc:
            raise AuthenticationFailed(f"Login at {url} returned a bad expires_in: {body.get('expires_in')!r}") from exc

    access = AccessToken(token=token, expires_at=expires_at)
    if token_cache:
        cache = _load_token_cache(token_cache)
        cache[key] = {"token": access.token, "expires_at": access.expires_at.isoformat()}
        _save_token_cache(token_cache, cache)
    return access


class ContentApi:
    """Read-only calls against the content API, one request per call."""

    def __init__(self, api_base: str, token: AccessToken) -> None:
        self.api_base = api_base.rstrip("/")
        self.token = token

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> object:
        url = f"{self.api_base}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        try:
            return _http_json(url, headers={"Authorization": f"Bearer {self.token.token}"})
        except urllib.error.HTTPError as exc:
            raise FetchFailed(f"GET {url} failed: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise FetchFailed(f"GET {url} failed: {exc}") from exc

    def search_services(self, start: datetime, end: datetime, statuses: Sequence[str]) -> List[ServiceSummary]:
        params = {
            "start": start.astimezone(timezone.utc).isoformat(),
            "end": end.astimezone(timezone.utc).isoformat(),
            "status": ",".join(statuses),
            "sort": "start",
        }
        return decode_service_list(self._get("/services", params))

    def service_detail(self, service_id: str) -> ServiceDetail:
        return decode_service_detail(self._get(f"/services/{urllib.parse.quote(service_id, safe='')}"))

    def plan_payload(self, plan_id: str) -> object:
        return self._get(f"/plans/{urllib.parse.quote(plan_id, safe='')}")


# Selection ----------------------------------------------------------------


class Chooser(Protocol):
    def choose(self, prompt: str, labels: Sequence[str]) -> Optional[int]:
        ...


class TerminalChooser:
    """Numbered list on stdout, index read from stdin. Blank, invalid or EOF means no choice."""

    def __init__(self, read: Callable[[str], str] = input, write: Callable[[str], None] = print) -> None:
        self._read = read
        self._write = write

    def choose(self, prompt: str, labels: Sequence[str]) -> Optional[int]:
        self._write(prompt)
        for idx, label in enumerate(labels, start=1):
            self._write(f"  {idx}) {label}")
        try:
            answer = clean_text(self._read("Select a number (blank to cancel): "))
        except EOFError:
            return None
        if not answer.isdigit():
            return None
        picked = int(answer) - 1
        return picked if 0 <= picked < len(labels) else None


def _candidate_list(items: Sequence[Union[ServiceSummary, ServiceDetail, PlanSummary]]) -> List[Tuple[str, str]]:
    return [(item.title, item.id) for item in items]


def _describe(candidates: List[Tuple[str, str]]) -> str:
    return "; ".join(f"{title or '(untitled)'} [id {ident}]" for title, ident in candidates)


def _valid_pick(picked: Optional[int], items: Sequence[object]) -> bool:
    return isinstance(picked, int) and 0 <= picked < len(items)


def select_service(
    candidates: Sequence[ServiceSummary],
    fetch_detail: Callable[[str], ServiceDetail],
    chooser: Optional[Chooser] = None,
    explicit_id: str = "",
    searched: str = "",
) -> Union[ServiceDetail, str]:
    """
    Narrow a service search down to one service.

    An explicit id wins outright and is returned as-is. Otherwise only
    services that already carry a plan stay eligible; more than one of those
    needs a chooser, and without one (unattended) the run refuses to guess.
    """
    explicit = clean_text(explicit_id)
    if explicit:
        return explicit

    eligible = [d for d in (fetch_detail(c.id) for c in candidates) if d.plans]
    if not eligible:
        checked = ", ".join(c.id for c in candidates) or "none"
        where = f" in {searched}" if searched else ""
        raise NoEligibleService(f"No service with a plan found{where} (candidates checked: {checked})")
    if len(eligible) == 1:
        return eligible[0]

    listing = _candidate_list(eligible)
    if chooser is None:
        raise AmbiguousSelection(
            f"{len(eligible)} services have plans; re-run with an explicit service id: {_describe(listing)}",
            listing,
        )
    picked = chooser.choose("Multiple services found:", [_service_label(d) for d in eligible])
    if not _valid_pick(picked, eligible):
        raise NoSelectionMade("No service was selected")
    return eligible[picked]


def _service_label(detail: ServiceDetail) -> str:
    return f"{detail.title} ({detail.start.isoformat(timespec='minutes')}) [id {detail.id}]"


def select_plan(detail: ServiceDetail, chooser: Optional[Chooser] = None) -> PlanSummary:
    plans = list(detail.plans)
    if not plans:
        raise NoPlanFound(f"Service {detail.id} ({detail.title}) has no plans")
    if len(plans) == 1:
        return plans[0]

    listing = _candidate_list(plans)
    if chooser is None:
        raise AmbiguousPlan(
            f"Service {detail.id} has {len(plans)} plans; re-run with an explicit plan id: {_describe(listing)}",
            listing,
        )
    picked = chooser.choose(f"Multiple plans found for {detail.title}:", [p.label() for p in plans])
    if not _valid_pick(picked, plans):
        raise NoSelectionMade(f"No plan was selected for service {detail.id}")
    return plans[picked]
