# excel_bridge/services/find_replace.py
"""
Find / replace over workbook cells, in two phases.

Discovery runs one of two strategies:

``text``
    substring or whole-word search for ``searchTerm`` inside a scope
    (header_only, specific_range, entire_sheet, all_sheets).
``labelNeighbor`` (alias ``entityName``)
    finds label cells ("Entity name", "Fund:" ...) and takes the first
    non-empty cell below or to the right of each, within bounded steps.
    Meant for form-like sheets where values sit next to their labels.

A request without ``mode``/``confirm`` only previews: every match is
returned with a stable ``matchId`` and nothing is written. Applying always
re-runs discovery against the live workbook and writes only the selected
matches, so a stale client-side list can never be replayed.
"""
from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from excel_bridge import graph_sharepoint as gs
from excel_bridge.errors import GraphAPIError, ValidationError
from excel_bridge.graph_client import GraphClient
from excel_bridge.services import audit, name_resolver
from excel_bridge.services.cell_refs import a1, parse_address, parse_sheet_and_address
from excel_bridge.services.name_resolver import WorkbookTarget
from excel_bridge.utils.request_params import as_bool

log = logging.getLogger(__name__)

SCOPES = ("header_only", "specific_range", "entire_sheet", "all_sheets")
STRATEGIES = ("text", "labelNeighbor", "entityName")
MODES = ("preview", "apply")
DIRECTIONS = ("down", "right")
REPLACE_MODES = ("all", "first")
LABEL_MODES = ("exact", "fuzzy")
DEFAULT_ENTITY_LABELS = ["Entity name", "Entity", "Entity Name"]
HIGHLIGHT_COLOR = "#FFFF00"
SAMPLE_SIZE = 10


def _as_text(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _as_int(value: Any, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if n < 0:
        raise ValidationError(f"{name} must be >= 0")
    return n


def _as_list(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v) != ""]
    return [s.strip() for s in str(value).split(",") if s.strip()]


# ───────────────────────── options ─────────────────────────
@dataclass
class FindReplaceOptions:
    search_term: Optional[str] = None
    replace_term: Optional[str] = None
    strategy: str = "text"
    scope: str = "entire_sheet"
    range_spec: Optional[str] = None
    sheet_name: Optional[str] = None
    sheet_scope: Optional[str] = None
    mode: Optional[str] = None
    confirm: bool = False
    preview_id: Optional[str] = None
    selection: List[str] = field(default_factory=list)
    select_all: bool = False
    case_sensitive: bool = False
    whole_word: bool = False
    include_formulas: bool = False
    replace_inside: bool = True
    replace_mode: str = "all"
    labels: List[str] = field(default_factory=list)
    label_mode: str = "exact"
    case_sensitive_label: bool = False
    strip_colons: bool = True
    fuzzy_threshold: float = 0.85
    directions: List[str] = field(default_factory=lambda: list(DIRECTIONS))
    max_down: int = 3
    max_right: int = 3
    value_search_term: Optional[str] = None
    highlight_changes: bool = False
    log_changes: bool = True

    @classmethod
    def from_params(cls, p: Mapping[str, Any]) -> "FindReplaceOptions":
        strategy = p.get("strategy") or "text"
        if strategy not in STRATEGIES:
            raise ValidationError(f"strategy must be one of {', '.join(STRATEGIES)}")
        labels = _as_list(p.get("label"))
        if strategy == "entityName":
            strategy = "labelNeighbor"
            labels = labels or list(DEFAULT_ENTITY_LABELS)

        scope = p.get("scope") or "entire_sheet"
        if scope not in SCOPES:
            raise ValidationError(f"scope must be one of {', '.join(SCOPES)}")

        mode = p.get("mode") or None
        if mode is not None and mode not in MODES:
            raise ValidationError("mode must be 'preview' or 'apply'")

        opts = cls(
            search_term=_as_text(p.get("searchTerm"), "searchTerm"),
            replace_term=_as_text(p.get("replaceTerm"), "replaceTerm"),
            strategy=strategy,
            scope=scope,
            range_spec=p.get("rangeSpec"),
            sheet_name=p.get("sheetName"),
            sheet_scope=p.get("sheetScope"),
            mode=mode,
            confirm=as_bool(p.get("confirm")),
            preview_id=p.get("previewId"),
            selection=_as_list(p.get("selection")),
            select_all=as_bool(p.get("selectAll")),
            case_sensitive=as_bool(p.get("caseSensitive")),
            whole_word=as_bool(p.get("wholeWord")),
            include_formulas=as_bool(p.get("includeFormulas")),
            replace_inside=as_bool(p.get("replaceInside"), True),
            replace_mode=p.get("replaceMode") or "all",
            labels=labels,
            label_mode=p.get("labelMode") or "exact",
            case_sensitive_label=as_bool(p.get("caseSensitiveLabel")),
            strip_colons=as_bool(p.get("stripColons"), True),
            directions=_as_list(p.get("directions")) or list(DIRECTIONS),
            max_down=_as_int(p.get("maxDown"), 3, "maxDown"),
            max_right=_as_int(p.get("maxRight"), 3, "maxRight"),
            value_search_term=_as_text(p.get("valueSearchTerm"), "valueSearchTerm") or None,
            highlight_changes=as_bool(p.get("highlightChanges")),
            log_changes=as_bool(p.get("logChanges"), True),
        )
        try:
            opts.fuzzy_threshold = float(p.get("fuzzyThreshold", 0.85))
        except (TypeError, ValueError):
            raise ValidationError("fuzzyThreshold must be a number between 0 and 1")
        opts.validate()
        return opts

    def validate(self) -> None:
        if self.strategy == "text" and not self.search_term:
            raise ValidationError("searchTerm is required")
        if self.strategy == "labelNeighbor" and not (self.labels or self.search_term):
            raise ValidationError("label (or searchTerm) is required for the labelNeighbor strategy")
        if self.scope == "specific_range" and not self.range_spec and self.strategy == "text":
            raise ValidationError('rangeSpec is required when scope is "specific_range"')
        if self.replace_mode not in REPLACE_MODES:
            raise ValidationError("replaceMode must be 'all' or 'first'")
        if self.label_mode not in LABEL_MODES:
            raise ValidationError("labelMode must be 'exact' or 'fuzzy'")
        if not 0 < self.fuzzy_threshold <= 1:
            raise ValidationError("fuzzyThreshold must be a number between 0 and 1")
        bad = [d for d in self.directions if d not in DIRECTIONS]
        if bad:
            raise ValidationError(f"directions may only contain {', '.join(DIRECTIONS)}")
        if self.is_apply:
            if self.replace_term is None:
                raise ValidationError("replaceTerm is required for confirmed replacement")
            if self.mode == "apply" and not (self.select_all or self.selection):
                raise ValidationError("mode='apply' requires selectAll=true or selection=[matchId,...]")

    @property
    def is_preview(self) -> bool:
        return self.mode == "preview" or (self.mode is None and not self.confirm)

    @property
    def is_apply(self) -> bool:
        return self.mode == "apply" or (self.mode is None and self.confirm)

    @property
    def label_list(self) -> List[str]:
        return self.labels or ([self.search_term] if self.search_term else [])


# ───────────────────────── pure matching ─────────────────────────
def match_id(strategy: str, sheet: str, address: str) -> str:
    """Stable per cell: the same cell found by the same strategy always gets the same id."""
    digest = hashlib.sha1(f"{strategy}|{sheet}|{address}".encode("utf-8")).hexdigest()
    return f"m_{digest[:12]}"


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def compile_term(term: str, case_sensitive: bool = False, whole_word: bool = False) -> "re.Pattern[str]":
    body = re.escape(term)
    if whole_word:
        body = rf"(?<!\w){body}(?!\w)"
    return re.compile(body, 0 if case_sensitive else re.IGNORECASE)


def _is_formula(formula: Any) -> bool:
    return isinstance(formula, str) and formula.startswith("=")


def text_matches(
    sheet: str,
    values: List[List[Any]],
    origin: Tuple[int, int],
    pattern: "re.Pattern[str]",
    *,
    formulas: Optional[List[List[Any]]] = None,
    include_formulas: bool = False,
    header_row: Optional[int] = None,
) -> List[dict]:
    """Cells of one grid whose text (or formula, when included) matches `pattern`."""
    first_row, first_col = origin
    out: List[dict] = []
    for r, row in enumerate(values):
        for c, value in enumerate(row):
            formula = formulas[r][c] if formulas and r < len(formulas) and c < len(formulas[r]) else None
            is_formula = _is_formula(formula)
            if is_formula and not include_formulas:
                continue
            text = formula if is_formula else cell_text(value)
            if not text or not pattern.search(text):
                continue
            row_no, col_no = first_row + r, first_col + c
            address = a1(row_no, col_no)
            out.append({
                "sheet": sheet,
                "address": address,
                "currentValue": formula if is_formula else value,
                "isHeader": header_row is not None and row_no == header_row,
                "isFormula": is_formula,
                "matchId": match_id("text", sheet, address),
            })
    return out


def replace_text(
    text: str,
    pattern: "re.Pattern[str]",
    replacement: str,
    *,
    replace_mode: str = "all",
    replace_inside: bool = True,
) -> str:
    if not pattern.search(text):
        return text
    if not replace_inside:
        return replacement
    return pattern.sub(lambda _m: replacement, text, count=1 if replace_mode == "first" else 0)


class LabelMatcher:
    """Decides whether a cell is one of the configured labels."""

    def __init__(
        self,
        labels: Iterable[str],
        *,
        mode: str = "exact",
        case_sensitive: bool = False,
        strip_colons: bool = True,
        threshold: float = 0.85,
    ):
        self.mode = mode
        self.case_sensitive = case_sensitive
        self.strip_colons = strip_colons
        self.threshold = threshold
        self.labels = {self.normalize(l) for l in labels if self.normalize(l)}

    def normalize(self, value: Any) -> str:
        s = " ".join(cell_text(value).split())
        if self.strip_colons:
            s = s.rstrip(":：").rstrip()
        return s if self.case_sensitive else s.casefold()

    def __call__(self, value: Any) -> bool:
        s = self.normalize(value)
        if not s:
            return False
        if s in self.labels:
            return True
        if self.mode == "fuzzy":
            return any(SequenceMatcher(None, s, l).ratio() >= self.threshold for l in self.labels)
        return False


def label_neighbor_matches(
    sheet: str,
    values: List[List[Any]],
    origin: Tuple[int, int],
    is_label: LabelMatcher,
    *,
    directions: Iterable[str] = DIRECTIONS,
    max_down: int = 3,
    max_right: int = 3,
    value_pattern: Optional["re.Pattern[str]"] = None,
) -> List[dict]:
    """
    For each label cell, the first non-empty cell within `max_down` rows
    below or `max_right` columns to the right, trying `directions` in order.
    Hitting another label ends that direction.
    """
    first_row, first_col = origin
    out: List[dict] = []
    seen = set()

    for r, row in enumerate(values):
        for c, value in enumerate(row):
            if not is_label(value):
                continue
            for direction in directions:
                limit = max_down if direction == "down" else max_right
                hit = None
                for step in range(1, limit + 1):
                    rr, cc = (r + step, c) if direction == "down" else (r, c + step)
                    if rr >= len(values) or cc >= len(values[rr]):
                        break
                    neighbor = values[rr][cc]
                    if cell_text(neighbor).strip() == "":
                        continue
                    if is_label(neighbor):
                        break
                    hit = (rr, cc, neighbor, step)
                    break
                if hit is None:
                    continue
                rr, cc, neighbor, step = hit
                if value_pattern is not None and not value_pattern.search(cell_text(neighbor)):
                    continue
                address = a1(first_row + rr, first_col + cc)
                if address not in seen:
                    seen.add(address)
                    out.append({
                        "sheet": sheet,
                        "address": address,
                        "currentValue": neighbor,
                        "label": cell_text(value),
                        "labelAddress": a1(first_row + r, first_col + c),
                        "direction": direction,
                        "distance": step,
                        "matchId": match_id("labelNeighbor", sheet, address),
                    })
                break
    return out


# ───────────────────────── discovery ─────────────────────────
def _grid_origin(payload: Dict[str, Any]) -> Tuple[int, int]:
    address = payload.get("address")
    if address:
        r1, c1, _, _ = parse_address(address)
        return r1, c1
    return int(payload.get("rowIndex", 0)) + 1, int(payload.get("columnIndex", 0)) + 1


def _sheets_to_scan(
    client: GraphClient, target: WorkbookTarget, opts: FindReplaceOptions
) -> Tuple[str, List[Tuple[str, Optional[str]]]]:
    """(effective scope, [(sheet name, explicit address or None)])."""
    scope = opts.scope
    sheet_name = opts.sheet_name
    if opts.sheet_scope == "ALL":
        scope = "all_sheets"
    elif opts.sheet_scope:
        if scope != "header_only":
            scope = "entire_sheet"
        sheet_name = opts.sheet_scope

    if opts.strategy == "labelNeighbor" and scope != "specific_range":
        scope = "entire_sheet" if sheet_name else "all_sheets"

    if scope == "specific_range":
        range_sheet, address = parse_sheet_and_address(opts.range_spec or "")
        if not address:
            raise ValidationError('rangeSpec is required when scope is "specific_range"')
        sheet = name_resolver.resolve_sheet(client, target.drive_id, target.item_id, range_sheet or sheet_name)
        return scope, [(sheet["name"], address)]

    if scope == "entire_sheet" or (scope == "header_only" and sheet_name):
        sheet = name_resolver.resolve_sheet(client, target.drive_id, target.item_id, sheet_name)
        return scope, [(sheet["name"], None)]

    sheets = name_resolver.list_sheets(client, target.drive_id, target.item_id)
    return scope, [(s["name"], None) for s in sheets]


def discover(client: GraphClient, target: WorkbookTarget, opts: FindReplaceOptions) -> Tuple[str, List[dict]]:
    """Run the configured strategy against live workbook content."""
    scope, sheets = _sheets_to_scan(client, target, opts)
    pattern = compile_term(opts.search_term, opts.case_sensitive, opts.whole_word) if opts.search_term else None
    matcher = None
    value_pattern = None
    if opts.strategy == "labelNeighbor":
        matcher = LabelMatcher(
            opts.label_list,
            mode=opts.label_mode,
            case_sensitive=opts.case_sensitive_label,
            strip_colons=opts.strip_colons,
            threshold=opts.fuzzy_threshold,
        )
        if opts.value_search_term:
            value_pattern = compile_term(opts.value_search_term, opts.case_sensitive, opts.whole_word)

    matches: List[dict] = []
    for sheet, address in sheets:
        if address:
            payload = gs.get_range(client, target.drive_id, target.item_id, sheet, address)
        else:
            payload = gs.used_range(client, target.drive_id, target.item_id, sheet)
        values = payload.get("values") or []
        if not values:
            continue
        origin = _grid_origin(payload)
        formulas = payload.get("formulas")

        if matcher is not None:
            matches.extend(label_neighbor_matches(
                sheet, values, origin, matcher,
                directions=opts.directions,
                max_down=opts.max_down, max_right=opts.max_right,
                value_pattern=value_pattern,
            ))
            continue

        if scope == "header_only":
            values = values[:1]
            formulas = formulas[:1] if formulas else None
        matches.extend(text_matches(
            sheet, values, origin, pattern,
            formulas=formulas,
            include_formulas=opts.include_formulas,
            header_row=origin[0],
        ))

    log.info(
        "discovery strategy=%s scope=%s sheets=%d matches=%d",
        opts.strategy, scope, len(sheets), len(matches),
    )
    return scope, matches


# ───────────────────────── preview / apply ─────────────────────────
def public_match(m: dict) -> dict:
    out = {
        "matchId": m["matchId"],
        "sheet": m["sheet"],
        "address": m["address"],
        "currentValue": m.get("currentValue"),
    }
    for extra in ("isHeader", "isFormula", "label", "labelAddress", "direction", "distance"):
        if extra in m:
            out[extra] = m[extra]
    return out


def build_preview(opts: FindReplaceOptions, scope: str, matches: List[dict]) -> dict:
    if opts.strategy == "labelNeighbor":
        message = f"Found {len(matches)} field(s) by label neighbor."
    else:
        message = f"Found {len(matches)} text match(es) for '{opts.search_term}'."
    return {
        "status": "confirmation_required",
        "message": message,
        "previewId": f"preview_{uuid.uuid4().hex[:16]}",
        "strategy": opts.strategy,
        "scope": scope,
        "sheetScope": opts.sheet_scope or ("ALL" if scope == "all_sheets" else None),
        "searchTerm": opts.search_term,
        "replaceTerm": opts.replace_term,
        "totalMatches": len(matches),
        "matches": [public_match(m) for m in matches],
        "instructions": (
            "Resend the same request with mode='apply' and either selectAll=true "
            "or selection=[matchId,...] to apply."
        ),
    }


def _new_value(m: dict, opts: FindReplaceOptions, pattern: Optional["re.Pattern[str]"]) -> str:
    if opts.strategy == "labelNeighbor":
        return opts.replace_term
    return replace_text(
        cell_text(m.get("currentValue")), pattern, opts.replace_term,
        replace_mode=opts.replace_mode, replace_inside=opts.replace_inside,
    )


def apply_changes(
    client: GraphClient, target: WorkbookTarget, matches: List[dict], opts: FindReplaceOptions
) -> dict:
    """Write the selected subset of freshly discovered matches."""
    errors: List[dict] = []
    if opts.select_all or not opts.selection:
        selected = list(matches)
    else:
        by_id = {m["matchId"]: m for m in matches}
        selected = []
        for mid in opts.selection:
            if mid in by_id:
                selected.append(by_id[mid])
            else:
                errors.append({"matchId": mid, "error": "match no longer present"})

    pattern = None
    if opts.strategy == "text":
        pattern = compile_term(opts.search_term, opts.case_sensitive, opts.whole_word)

    changes: List[dict] = []
    unchanged = 0
    for m in selected:
        old = cell_text(m.get("currentValue"))
        new = _new_value(m, opts, pattern)
        if new == old:
            unchanged += 1
            continue
        body = {"formulas": [[new]]} if m.get("isFormula") else {"values": [[new]]}
        try:
            gs.patch_range(client, target.drive_id, target.item_id, m["sheet"], m["address"], body)
        except GraphAPIError as e:
            log.warning("update of %s!%s failed: %s", m["sheet"], m["address"], e.message)
            errors.append({"matchId": m["matchId"], "sheet": m["sheet"], "cell": m["address"], "error": e.message})
            continue

        change = {"sheet": m["sheet"], "cell": m["address"], "oldValue": m.get("currentValue"), "newValue": new}
        if opts.highlight_changes:
            try:
                gs.highlight_range(client, target.drive_id, target.item_id, m["sheet"], m["address"], HIGHLIGHT_COLOR)
                change["highlighted"] = True
            except GraphAPIError as e:
                log.warning("highlight of %s!%s failed: %s", m["sheet"], m["address"], e.message)
                change["highlighted"] = False
        changes.append(change)

    return {
        "summary": {
            "totalMatches": len(matches),
            "selected": len(opts.selection) if (opts.selection and not opts.select_all) else len(selected),
            "successful": len(changes),
            "failed": len(errors),
            "unchanged": unchanged,
        },
        "changes": changes,
        "errors": errors,
    }


def search_summary(search_term: str, matches: List[dict], limit: int) -> dict:
    by_sheet: Dict[str, int] = {}
    for m in matches:
        by_sheet[m["sheet"]] = by_sheet.get(m["sheet"], 0) + 1
    headers = sum(1 for m in matches if m.get("isHeader"))
    return {
        "searchTerm": search_term,
        "totalMatches": len(matches),
        "breakdown": {"headers": headers, "dataRows": len(matches) - headers},
        "bySheet": by_sheet,
        "samples": [public_match(m) for m in matches[:SAMPLE_SIZE]],
        "matches": [public_match(m) for m in matches[:limit]],
        "truncated": len(matches) > limit,
    }


# ───────────────────────── orchestration ─────────────────────────
def run_find_replace(
    client: GraphClient, target: WorkbookTarget, opts: FindReplaceOptions
) -> Tuple[dict, int]:
    """SEARCHING → PREVIEW (409) or APPLY; zero matches ends early with no_matches."""
    scope, matches = discover(client, target, opts)
    file_name = target.item_name

    if not matches:
        what = opts.search_term or ", ".join(opts.label_list)
        return {
            "status": "no_matches",
            "message": f"No occurrences of '{what}' found.",
            "data": {
                "searchTerm": opts.search_term,
                "strategy": opts.strategy,
                "scope": scope,
                "rangeSpec": opts.range_spec,
                "totalMatches": 0,
            },
        }, 200

    if opts.is_preview:
        preview = build_preview(opts, scope, matches)
        audit.record_event(
            "FIND_REPLACE_PREVIEW",
            {
                **target.describe(),
                "previewId": preview["previewId"],
                "strategy": opts.strategy,
                "searchTerm": opts.search_term,
                "totalMatches": len(matches),
            },
            file_name=file_name,
        )
        return preview, 409

    result = apply_changes(client, target, matches, opts)
    summary = result["summary"]
    audit.record_event(
        "FIND_REPLACE_COMPLETED",
        {
            **target.describe(),
            "previewId": opts.preview_id,
            "strategy": opts.strategy,
            "searchTerm": opts.search_term,
            "replaceTerm": opts.replace_term,
            "scope": scope,
            "summary": summary,
            "changes": result["changes"][:100],
        },
        success=summary["failed"] == 0,
        file_name=file_name,
    )

    if opts.strategy == "labelNeighbor":
        message = f"Successfully updated {summary['successful']} field(s)"
    else:
        message = (
            f"Successfully replaced {summary['successful']} occurrence(s) of "
            f"'{opts.search_term}' with '{opts.replace_term}'"
        )
    data: Dict[str, Any] = {
        "searchTerm": opts.search_term,
        "replaceTerm": opts.replace_term,
        "strategy": opts.strategy,
        "scope": scope,
        "rangeSpec": opts.range_spec,
        "previewId": opts.preview_id,
        "summary": summary,
        "errors": result["errors"],
        "highlightChanges": opts.highlight_changes,
        "logChanges": opts.log_changes,
    }
    if opts.log_changes:
        data["changes"] = result["changes"]

    if summary["failed"]:
        return {"status": "partial_success", "message": message, "data": data}, 207
    return {"status": "success", "message": message, "data": data}, 200
