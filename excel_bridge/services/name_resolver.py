# excel_bridge/services/name_resolver.py
"""
Name → Graph ID resolution.

Every lookup ends in exactly one of three outcomes: a single entity, a
NameNotFoundError carrying every available name, or a MultipleMatchesError
carrying every match. Nothing here ever picks the first of several.

Rules shared by drives, items, folders and worksheets:

* names compare case-insensitively and exactly (no fuzzy matching here);
* an empty candidate list is fetched once more after a short delay, since
  Graph listings lag briefly behind recent writes;
* when the caller omits a name and exactly one candidate exists it is
  auto-selected, otherwise the caller is asked to specify one.

Unique resolutions are cached for NAME_CACHE_TTL_SECONDS, keyed by the
parent container (site, drive or workbook).
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from excel_bridge import graph_sharepoint as gs
from excel_bridge.config import cfg
from excel_bridge.errors import (
    ConfigurationError,
    GraphAPIError,
    MultipleMatchesError,
    NameNotFoundError,
    SelectionRequiredError,
    ValidationError,
)
from excel_bridge.graph_client import GraphClient
from excel_bridge.services.cell_refs import parse_sheet_and_address

log = logging.getLogger(__name__)

WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm", ".xls")


# ───────────────────────── cache ─────────────────────────
class _TTLCache:
    def __init__(self):
        self._data: Dict[Tuple, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Tuple, ttl: float) -> Any:
        if ttl <= 0:
            return None
        with self._lock:
            hit = self._data.get(key)
            if hit and (time.monotonic() - hit[0]) < ttl:
                self.hits += 1
                return hit[1]
            if hit:
                del self._data[key]
            self.misses += 1
            return None

    def set(self, key: Tuple, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._data[key] = (time.monotonic(), value)

    def drop_scope(self, kind: str, scope_id: str) -> int:
        with self._lock:
            stale = [k for k in self._data if k[0] == kind and k[1] == scope_id]
            for k in stale:
                del self._data[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.hits = self.misses = 0

    def __len__(self) -> int:
        return len(self._data)


_cache = _TTLCache()


def _ttl() -> float:
    return float(cfg("NAME_CACHE_TTL_SECONDS", 600) or 0)


def clear_caches() -> None:
    _cache.clear()


def invalidate(kind: str, scope_id: str) -> None:
    """Forget cached resolutions of `kind` under one container (after renames/deletes)."""
    dropped = _cache.drop_scope(kind, scope_id)
    if dropped:
        log.debug("dropped %d cached %s resolution(s) under %s", dropped, kind, scope_id)


def cache_stats() -> Dict[str, int]:
    return {"entries": len(_cache), "hits": _cache.hits, "misses": _cache.misses}


# ───────────────────────── matching rules ─────────────────────────
def _norm(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


def match_by_name(candidates: List[dict], name: str) -> List[dict]:
    want = _norm(name)
    return [c for c in candidates if _norm(c.get("name")) == want]


def select_one(
    entity: str,
    name: Optional[str],
    candidates: List[dict],
    *,
    param: Optional[str] = None,
    hint: str = "itemPath",
) -> dict:
    """Pick exactly one candidate or raise the matching resolution error."""
    available = [c.get("name") for c in candidates]

    if not (name or "").strip():
        if len(candidates) == 1:
            log.info("auto-selected only %s '%s'", entity, candidates[0].get("name"))
            return candidates[0]
        if not candidates:
            raise NameNotFoundError(entity, None, [])
        raise SelectionRequiredError(entity, available, param=param)

    matches = match_by_name(candidates, name)
    if len(matches) == 1:
        return matches[0]
    if not matches:
        log.warning("%s '%s' not found among %d candidate(s)", entity, name, len(candidates))
        raise NameNotFoundError(entity, name, available)
    log.warning("%s '%s' is ambiguous: %d matches", entity, name, len(matches))
    raise MultipleMatchesError(entity, name, matches, hint=hint)


def fetch_candidates(fetch: Callable[[], List[dict]], what: str = "candidates") -> List[dict]:
    """Run `fetch`; if it comes back empty, wait once and fetch again."""
    items = fetch()
    if items:
        return items
    delay = float(cfg("EMPTY_LIST_RETRY_DELAY_SECONDS", 1.0) or 0)
    log.info("empty %s list; retrying once in %.1fs", what, delay)
    if delay > 0:
        time.sleep(delay)
    return fetch()


# ───────────────────────── site ─────────────────────────
@dataclass
class SiteContext:
    site_id: Optional[str] = None
    site_url: Optional[str] = None
    hostname: Optional[str] = None
    site_name: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "SiteContext":
        ctx = cls(
            site_id=params.get("siteId"),
            site_url=params.get("siteUrl"),
            hostname=params.get("hostname") or params.get("sharepointHostname"),
            site_name=params.get("siteName") or params.get("sharepointSiteName"),
        )
        if ctx.site_id or ctx.site_url or (ctx.hostname and ctx.site_name):
            return ctx
        return cls(
            site_id=cfg("SHAREPOINT_SITE_ID") or None,
            site_url=cfg("SHAREPOINT_SITE_URL") or None,
            hostname=cfg("SHAREPOINT_HOSTNAME") or None,
            site_name=cfg("SHAREPOINT_SITE_NAME") or None,
        )

    def site_ref(self) -> str:
        """Graph site reference by precedence: id, then URL, then hostname + name."""
        if self.site_id:
            return self.site_id
        if self.site_url:
            parsed = urlparse(self.site_url if "//" in self.site_url else f"https://{self.site_url}")
            if not parsed.hostname:
                raise ValidationError(f"Invalid siteUrl '{self.site_url}'")
            path = parsed.path.rstrip("/")
            return f"{parsed.hostname}:{path}" if path else parsed.hostname
        if self.hostname and self.site_name:
            return f"{self.hostname}:/sites/{self.site_name.strip('/')}"
        raise ConfigurationError(
            "Missing SharePoint site configuration: provide siteId, siteUrl or hostname + siteName "
            "(or set SHAREPOINT_SITE_ID / SHAREPOINT_SITE_URL / SHAREPOINT_HOSTNAME + SHAREPOINT_SITE_NAME)"
        )


def resolve_site_id(client: GraphClient, ctx: SiteContext) -> str:
    if ctx.site_id:
        return ctx.site_id
    ref = ctx.site_ref()
    key = ("site", ref.casefold())
    cached = _cache.get(key, _ttl())
    if cached:
        return cached
    site = gs.get_site(client, ref)
    _cache.set(key, site["id"], _ttl())
    return site["id"]


# ───────────────────────── drives ─────────────────────────
def list_drives(client: GraphClient, site_id: str) -> List[dict]:
    return fetch_candidates(lambda: gs.list_drives(client, site_id), "drive")


def resolve_drive(client: GraphClient, site_id: str, drive_name: Optional[str]) -> dict:
    key = ("drive", site_id, _norm(drive_name))
    if drive_name:
        cached = _cache.get(key, _ttl())
        if cached:
            return cached
    drive = select_one("drive", drive_name, list_drives(client, site_id), param="driveName")
    found = {"id": drive["id"], "name": drive["name"]}
    if drive_name:
        _cache.set(key, found, _ttl())
    return found


# ───────────────────────── items & folders ─────────────────────────
def is_workbook(name: str) -> bool:
    return (name or "").lower().endswith(WORKBOOK_EXTENSIONS)


def walk_drive(
    client: GraphClient,
    drive_id: str,
    *,
    folder_id: Optional[str] = None,
    base_path: str = "",
    depth: int = 0,
    max_depth: Optional[int] = None,
) -> Iterator[dict]:
    """Depth-first listing of every entry under a folder as {id, name, path, parentId, isFolder}."""
    if max_depth is None:
        max_depth = int(cfg("MAX_SEARCH_DEPTH", 20))
    if depth > max_depth:
        log.warning("max search depth %d reached at '%s'", max_depth, base_path or "/")
        return

    children = gs.list_children(client, drive_id, folder_id)
    for child in children:
        parent_id = folder_id or (child.get("parentReference") or {}).get("id") or "root"
        entry = {
            "id": child["id"],
            "name": child.get("name"),
            "path": f"{base_path}/{child.get('name')}",
            "parentId": parent_id,
            "isFolder": "folder" in child,
        }
        yield entry
        if entry["isFolder"]:
            yield from walk_drive(
                client, drive_id,
                folder_id=child["id"], base_path=entry["path"],
                depth=depth + 1, max_depth=max_depth,
            )


def list_entries(client: GraphClient, drive_id: str, *, folders: bool = False) -> List[dict]:
    """All files (or all folders) in a drive, retrying once when the drive looks empty."""

    def _fetch() -> List[dict]:
        return [e for e in walk_drive(client, drive_id) if e["isFolder"] == folders]

    return fetch_candidates(_fetch, "folder" if folders else "item")


def _normalize_path(path: str) -> str:
    path = (path or "").strip()
    if not path.startswith("/"):
        raise ValidationError(f"Path must start with '/': '{path}'")
    return "/" + path.strip("/")


def _public(entry: dict) -> dict:
    return {k: entry[k] for k in ("id", "name", "path", "parentId")}


def _resolve_entry(
    client: GraphClient,
    drive_id: str,
    entity: str,
    name: Optional[str],
    path: Optional[str],
    *,
    folders: bool,
) -> dict:
    hint = "folderPath" if folders else "itemPath"
    if path:
        path = _normalize_path(path)
        if not name:
            name = path.rsplit("/", 1)[-1]
    key = (entity, drive_id, _norm(name), (path or "").casefold())
    if name:
        cached = _cache.get(key, _ttl())
        if cached:
            return cached

    entries = list_entries(client, drive_id, folders=folders)

    if path:
        named = match_by_name(entries, name)
        exact = [e for e in named if e["path"].casefold() == path.casefold()]
        if len(exact) != 1:
            available = [e["path"] for e in named] or [e["path"] for e in entries]
            if len(exact) > 1:
                raise MultipleMatchesError(entity, name, exact, hint=hint)
            raise NameNotFoundError(entity, path, available)
        found = _public(exact[0])
    else:
        if not name and not folders:
            # auto-selection only considers workbooks
            entries = [e for e in entries if is_workbook(e["name"])]
        try:
            found = _public(select_one(entity, name, entries, param=f"{entity}Name", hint=hint))
        except NameNotFoundError as e:
            if not folders:
                e.payload[f"available{entity.capitalize()}s"] = sorted(
                    {x["name"] for x in entries if is_workbook(x["name"])}
                )
            raise

    if name:
        _cache.set(key, found, _ttl())
    return found


def resolve_item(
    client: GraphClient, drive_id: str, item_name: Optional[str], item_path: Optional[str] = None
) -> dict:
    """Workbook by name anywhere in the drive; `item_path` picks one of several same-named files."""
    return _resolve_entry(client, drive_id, "item", item_name, item_path, folders=False)


def resolve_folder(
    client: GraphClient, drive_id: str, folder_name: Optional[str], folder_path: Optional[str] = None
) -> dict:
    return _resolve_entry(client, drive_id, "folder", folder_name, folder_path, folders=True)


def resolve_entry_by_id(client: GraphClient, drive_id: str, entry_id: str, *, folders: bool = False) -> dict:
    """Entry picked by ID, typically from the `matches` of a multiple_matches reply."""
    entries = list_entries(client, drive_id, folders=folders)
    for entry in entries:
        if entry["id"] == entry_id:
            return _public(entry)
    entity = "folder" if folders else "item"
    raise NameNotFoundError(entity, entry_id, [e["path"] for e in entries])


def resolve_item_by_full_path(client: GraphClient, drive_id: str, full_path: str) -> dict:
    full_path = _normalize_path(full_path)
    key = ("item", drive_id, "", full_path.casefold())
    cached = _cache.get(key, _ttl())
    if cached:
        return cached
    try:
        item = gs.get_item_by_path(client, drive_id, full_path)
    except GraphAPIError as e:
        if e.status_code != 404:
            raise
        available = [x["path"] for x in list_entries(client, drive_id) if is_workbook(x["name"])]
        raise NameNotFoundError("item", full_path, available) from e
    if "folder" in item:
        raise ValidationError(f"'{full_path}' is a folder, not a file")
    found = {
        "id": item["id"],
        "name": item.get("name"),
        "path": full_path,
        "parentId": (item.get("parentReference") or {}).get("id"),
    }
    _cache.set(key, found, _ttl())
    return found


# ───────────────────────── worksheets ─────────────────────────
def list_sheets(client: GraphClient, drive_id: str, item_id: str) -> List[dict]:
    return fetch_candidates(lambda: gs.list_worksheets(client, drive_id, item_id), "worksheet")


def resolve_sheet(client: GraphClient, drive_id: str, item_id: str, sheet_name: Optional[str]) -> dict:
    key = ("sheet", item_id, _norm(sheet_name))
    if sheet_name:
        cached = _cache.get(key, _ttl())
        if cached:
            return cached
    sheet = select_one("sheet", sheet_name, list_sheets(client, drive_id, item_id), param="sheetName")
    found = {"id": sheet.get("id"), "name": sheet["name"]}
    if sheet_name:
        _cache.set(key, found, _ttl())
    return found


# ───────────────────────── request-level target ─────────────────────────
@dataclass
class WorkbookTarget:
    site_id: str
    drive_id: str
    drive_name: str
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    item_path: Optional[str] = None
    sheet: Optional[str] = None
    sheet_id: Optional[str] = None
    address: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        out = {
            "driveName": self.drive_name,
            "itemName": self.item_name,
            "itemPath": self.item_path,
        }
        if self.sheet:
            out["sheetName"] = self.sheet
        return out


def resolve_target(
    client: GraphClient,
    params: Mapping[str, Any],
    *,
    need_item: bool = True,
    need_sheet: bool = False,
) -> WorkbookTarget:
    """Resolve site → drive → item (→ sheet) for one request."""
    site_id = resolve_site_id(client, SiteContext.from_params(params))
    drive = resolve_drive(client, site_id, params.get("driveName"))
    target = WorkbookTarget(site_id=site_id, drive_id=drive["id"], drive_name=drive["name"])

    if need_item:
        if params.get("fullPath"):
            item = resolve_item_by_full_path(client, drive["id"], params["fullPath"])
        else:
            item = resolve_item(client, drive["id"], params.get("itemName"), params.get("itemPath"))
        target.item_id = item["id"]
        target.item_name = item["name"]
        target.item_path = item["path"]

    range_sheet, address = parse_sheet_and_address(params.get("range") or params.get("address") or "")
    target.address = address or None
    sheet_name = params.get("sheetName") or range_sheet

    if need_sheet and target.item_id:
        sheet = resolve_sheet(client, drive["id"], target.item_id, sheet_name)
        target.sheet = sheet["name"]
        target.sheet_id = sheet["id"]

    log.debug(
        "resolved target drive=%s item=%s sheet=%s address=%s",
        target.drive_name, target.item_path, target.sheet, target.address,
    )
    return target
