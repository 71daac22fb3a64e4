# excel_bridge/graph_sharepoint.py
from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import pandas as pd

from excel_bridge.graph_client import GraphClient

CHILD_SELECT = "id,name,folder,file,parentReference"


# --------- URL BUILDERS ---------
def _odata(value: str) -> str:
    """Quote a value for use inside an OData string literal: ('...')."""
    return quote(str(value).replace("'", "''"), safe="")


def drive_path(drive_id: str, path: str) -> str:
    clean = quote(path.strip("/"), safe="/")
    return f"/drives/{drive_id}/root:/{clean}"


def workbook_url(drive_id: str, item_id: str) -> str:
    return f"/drives/{drive_id}/items/{item_id}/workbook"


def worksheet_url(drive_id: str, item_id: str, sheet: str) -> str:
    return f"{workbook_url(drive_id, item_id)}/worksheets('{_odata(sheet)}')"


def range_url(drive_id: str, item_id: str, sheet: str, address: str) -> str:
    return f"{worksheet_url(drive_id, item_id, sheet)}/range(address='{_odata(address)}')"


def _values(payload: Dict[str, Any]) -> List[dict]:
    return list(payload.get("value") or [])


def _collect_pages(client: GraphClient, path: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
    out: List[dict] = []
    payload = client.get(path, params=params)
    out.extend(_values(payload))
    next_link = payload.get("@odata.nextLink")
    while next_link:
        payload = client.get(next_link)
        out.extend(_values(payload))
        next_link = payload.get("@odata.nextLink")
    return out


# --------- SITES & DRIVES ---------
def get_site(client: GraphClient, site_ref: str) -> dict:
    """site_ref is an ID or a ``host:/sites/Name`` reference."""
    return client.get(f"/sites/{site_ref}")


def list_drives(client: GraphClient, site_id: str) -> List[dict]:
    return _collect_pages(client, f"/sites/{site_id}/drives", params={"$select": "id,name,driveType,webUrl"})


# --------- DRIVE ITEMS ---------
def list_children(client: GraphClient, drive_id: str, item_id: Optional[str] = None) -> List[dict]:
    base = f"/drives/{drive_id}/items/{item_id}" if item_id else f"/drives/{drive_id}/root"
    return _collect_pages(client, f"{base}/children", params={"$select": CHILD_SELECT, "$top": 999})


def get_item(client: GraphClient, drive_id: str, item_id: str) -> dict:
    return client.get(f"/drives/{drive_id}/items/{item_id}")


def get_item_by_path(client: GraphClient, drive_id: str, path: str) -> dict:
    return client.get(drive_path(drive_id, path))


def search_drive(client: GraphClient, drive_id: str, query: str) -> List[dict]:
    return _collect_pages(client, f"/drives/{drive_id}/root/search(q='{_odata(query)}')")


def patch_item(client: GraphClient, drive_id: str, item_id: str, body: Dict[str, Any]) -> dict:
    return client.patch(f"/drives/{drive_id}/items/{item_id}", json=body)


def delete_item(client: GraphClient, drive_id: str, item_id: str) -> None:
    client.delete(f"/drives/{drive_id}/items/{item_id}")


def upload_content(
    client: GraphClient, drive_id: str, path: str, content: bytes, conflict_behavior: str = "fail"
) -> dict:
    return client.put(
        f"{drive_path(drive_id, path)}:/content",
        params={"@microsoft.graph.conflictBehavior": conflict_behavior},
        data=content,
        headers={"Content-Type": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"},
    )


# --------- WORKSHEETS ---------
def list_worksheets(client: GraphClient, drive_id: str, item_id: str) -> List[dict]:
    return _values(client.get(f"{workbook_url(drive_id, item_id)}/worksheets"))


def add_worksheet(client: GraphClient, drive_id: str, item_id: str, name: str) -> dict:
    return client.post(f"{workbook_url(drive_id, item_id)}/worksheets/add", json={"name": name})


def patch_worksheet(client: GraphClient, drive_id: str, item_id: str, sheet: str, body: Dict[str, Any]) -> dict:
    return client.patch(worksheet_url(drive_id, item_id, sheet), json=body)


def delete_worksheet(client: GraphClient, drive_id: str, item_id: str, sheet: str) -> None:
    client.delete(worksheet_url(drive_id, item_id, sheet))


# --------- RANGES ---------
def used_range(client: GraphClient, drive_id: str, item_id: str, sheet: str) -> dict:
    """address, values, formulas, rowIndex/columnIndex and counts of the used range."""
    return client.get(
        f"{worksheet_url(drive_id, item_id, sheet)}/usedRange",
        params={"$select": "address,values,formulas,rowIndex,columnIndex,rowCount,columnCount"},
    )


def get_range(client: GraphClient, drive_id: str, item_id: str, sheet: str, address: str) -> dict:
    return client.get(
        range_url(drive_id, item_id, sheet, address),
        params={"$select": "address,values,formulas,rowIndex,columnIndex,rowCount,columnCount"},
    )


def patch_range(
    client: GraphClient, drive_id: str, item_id: str, sheet: str, address: str, body: Dict[str, Any]
) -> dict:
    return client.patch(range_url(drive_id, item_id, sheet, address), json=body)


def clear_range(
    client: GraphClient, drive_id: str, item_id: str, sheet: str, address: Optional[str], apply_to: str = "contents"
) -> None:
    if address:
        path = f"{range_url(drive_id, item_id, sheet, address)}/clear"
    else:
        path = f"{worksheet_url(drive_id, item_id, sheet)}/usedRange/clear"
    client.post(path, json={"applyTo": apply_to})


def highlight_range(
    client: GraphClient, drive_id: str, item_id: str, sheet: str, address: str, color: str = "#FFFF00"
) -> None:
    client.patch(f"{range_url(drive_id, item_id, sheet, address)}/format/fill", json={"color": color})


# --------- TABLES & NAMES ---------
def list_tables(client: GraphClient, drive_id: str, item_id: str) -> List[dict]:
    return _values(client.get(f"{workbook_url(drive_id, item_id)}/tables"))


def read_table_rows(client: GraphClient, drive_id: str, item_id: str, table_name: str) -> dict:
    return client.get(f"{workbook_url(drive_id, item_id)}/tables('{_odata(table_name)}')/rows")


def read_table_header(client: GraphClient, drive_id: str, item_id: str, table_name: str) -> dict:
    return client.get(f"{workbook_url(drive_id, item_id)}/tables('{_odata(table_name)}')/headerRowRange")


def add_table_rows(
    client: GraphClient, drive_id: str, item_id: str, table_name: str, values: List[List[Any]]
) -> dict:
    return client.post(
        f"{workbook_url(drive_id, item_id)}/tables('{_odata(table_name)}')/rows/add",
        json={"values": values},
    )


def add_named_item(
    client: GraphClient, drive_id: str, item_id: str, name: str, reference: str, comment: str = ""
) -> dict:
    return client.post(
        f"{workbook_url(drive_id, item_id)}/names/add",
        json={"name": name, "reference": reference, "comment": comment},
    )


# --------- DATAFRAMES ---------
def pandas_from_range_payload(payload: dict, first_row_headers: bool = True) -> pd.DataFrame:
    """
    payload is a range response (``values`` is a 2D list).
    Either the first row becomes the headers or synthetic col_N headers are used.
    """
    values = payload.get("values") or []
    if not values:
        return pd.DataFrame()

    if first_row_headers and len(values) >= 1:
        cols = [str(c) if c not in (None, "") else f"col_{i + 1}" for i, c in enumerate(values[0])]
        rows = values[1:]
        return pd.DataFrame(rows, columns=cols)

    width = max(len(row) for row in values)
    cols = [f"col_{i + 1}" for i in range(width)]
    return pd.DataFrame(values, columns=cols)
