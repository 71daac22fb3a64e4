# tests/test_excel_routes.py
"""
End-to-end tests of the /api/excel endpoints against the in-memory Graph.
"""
import pytest


def post(client, path, **body):
    return client.post(f"/api/excel/{path}", json=body)


class TestResolutionErrors:
    def test_two_drives_and_no_drive_name(self, client, graph):
        graph.add_drive("Documents")
        graph.add_drive("Shared Documents")
        resp = post(client, "read", itemName="Budget.xlsx")
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["status"] == "selection_required"
        assert body["availableDrives"] == ["Documents", "Shared Documents"]
        assert body["error"]["category"] == "selection_required"
        assert body["requestId"]

    def test_unknown_drive(self, client, graph):
        graph.add_drive("Documents")
        resp = post(client, "read", driveName="Archive", itemName="x.xlsx")
        assert resp.status_code == 404
        assert resp.get_json()["availableDrives"] == ["Documents"]

    def test_duplicate_workbooks_need_item_path(self, client, graph):
        drive_id = graph.add_drive("Documents")
        graph.add_workbook(drive_id, "/2024/Report.xlsx", sheets={"S": [["old"]]})
        graph.add_workbook(drive_id, "/2025/Report.xlsx", sheets={"S": [["new"]]})

        resp = post(client, "read", itemName="Report.xlsx")
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["status"] == "multiple_matches"
        assert body["entityType"] == "item"
        assert sorted(m["path"] for m in body["matches"]) == ["/2024/Report.xlsx", "/2025/Report.xlsx"]

        resp = post(client, "read", itemName="Report.xlsx", itemPath="/2025/Report.xlsx")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["values"] == [["new"]]

    def test_relative_item_path_is_rejected(self, client, docs_drive):
        resp = post(client, "read", itemPath="Finance/Budget.xlsx")
        assert resp.status_code == 400

    def test_graph_failures_are_classified(self, client, graph, docs_drive):
        graph.fail("PATCH", r"range\(address=", 423, "resourceLocked")
        resp = post(client, "write", itemName="Budget.xlsx", range="E1", values=[[1]])
        assert resp.status_code == 423
        assert resp.get_json()["error"]["category"] == "locked"

    def test_expired_token_is_refreshed_transparently(self, client, graph, docs_drive):
        graph.fail("GET", r"/worksheets$", 401, "InvalidAuthenticationToken")
        resp = post(client, "read", itemName="Budget.xlsx")
        assert resp.status_code == 200
        assert graph.tokens.invalidations == 1


class TestRead:
    def test_single_sheet_is_read_whole_without_sheet_name(self, client, docs_drive):
        resp = post(client, "read", itemName="budget.xlsx")
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["sheetName"] == "Summary"
        assert data["address"] == "Summary!A1:C3"
        assert data["values"][1] == ["foo", 10, "foo bar"]

    def test_explicit_range_with_sheet_prefix(self, client, docs_drive):
        resp = post(client, "read", itemName="Budget.xlsx", range="Summary!A2:B2")
        assert resp.get_json()["data"]["values"] == [["foo", 10]]

    def test_full_path(self, client, docs_drive):
        resp = post(client, "read", fullPath="/Finance/Budget.xlsx", range="A3")
        assert resp.get_json()["data"]["values"] == [["baz"]]

    def test_records(self, client, docs_drive):
        resp = post(client, "read", itemName="Budget.xlsx", asRecords=True)
        data = resp.get_json()["data"]
        assert data["columns"] == ["Name", "Amount", "Note"]
        assert data["records"][1]["Name"] == "baz"
        assert data["truncated"] is False

    def test_records_flag_from_query_string(self, client, docs_drive):
        resp = client.post("/api/excel/read?asRecords=on", json={"itemName": "Budget.xlsx"})
        assert resp.get_json()["data"]["columns"] == ["Name", "Amount", "Note"]

    def test_worksheet_alias_and_file_alias(self, client, docs_drive):
        resp = post(client, "read", fileName="Budget.xlsx", worksheetName="Summary", range="C2")
        assert resp.get_json()["data"]["values"] == [["foo bar"]]


class TestWrite:
    def test_single_cell_anchor_expands(self, client, graph, docs_drive):
        _, item_id = docs_drive
        resp = post(client, "write", itemName="Budget.xlsx", range="E1", values=[[1, 2], [3, 4]])
        assert resp.status_code == 200
        assert resp.get_json()["data"]["address"] == "Summary!E1:F2"
        assert graph.cell(item_id, "Summary", "F2") == 4

    def test_append_below_used_range(self, client, graph, docs_drive):
        _, item_id = docs_drive
        resp = post(client, "write", itemName="Budget.xlsx", values=[["qux", 30, "new"]])
        data = resp.get_json()["data"]
        assert data["appended"] is True
        assert graph.cell(item_id, "Summary", "A4") == "qux"

    def test_shape_mismatch(self, client, docs_drive):
        resp = post(client, "write", itemName="Budget.xlsx", range="A1:B1", values=[[1]])
        assert resp.status_code == 400
        assert "1x1" in resp.get_json()["message"]

    @pytest.mark.parametrize("values", [[], [[]], [[1, 2], [3]], "abc"])
    def test_bad_values(self, client, docs_drive, values):
        resp = post(client, "write", itemName="Budget.xlsx", range="A1", values=values)
        assert resp.status_code == 400

    def test_clear_range(self, client, graph, docs_drive):
        _, item_id = docs_drive
        resp = post(client, "clear-data", itemName="Budget.xlsx", range="A2:C2")
        assert resp.status_code == 200
        assert graph.cell(item_id, "Summary", "A2") == ""
        assert graph.cell(item_id, "Summary", "A3") == "baz"

    def test_clear_without_range_needs_all(self, client, docs_drive):
        resp = post(client, "clear-data", itemName="Budget.xlsx")
        assert resp.status_code == 400
        resp = post(client, "clear-data", itemName="Budget.xlsx", applyTo="all")
        assert resp.get_json()["data"]["address"] == "usedRange"


class TestSheetsAndFiles:
    def test_create_and_delete_sheet(self, client, graph, docs_drive):
        _, item_id = docs_drive
        resp = post(client, "create-sheet", itemName="Budget.xlsx", newSheetName="Q2")
        assert resp.status_code == 201
        assert [s.name for s in graph.workbooks[item_id]["sheets"]] == ["Summary", "Q2"]

        resp = post(client, "create-sheet", itemName="Budget.xlsx", newSheetName="q2")
        assert resp.status_code == 409

        resp = post(client, "delete-sheet", itemName="Budget.xlsx", sheetName="Q2")
        assert resp.status_code == 200
        assert resp.get_json()["data"]["remainingSheets"] == ["Summary"]

    def test_last_sheet_cannot_be_deleted(self, client, docs_drive):
        resp = post(client, "delete-sheet", itemName="Budget.xlsx", sheetName="Summary")
        assert resp.status_code == 400
        assert "last worksheet" in resp.get_json()["message"]

    def test_create_file(self, client, graph, docs_drive):
        drive_id, _ = docs_drive
        resp = post(client, "create-file", fileName="New.xlsx", folderPath="/Reports", sheetNames=["Data", "Notes"])
        assert resp.status_code == 201
        assert resp.get_json()["data"]["path"] == "/Reports/New.xlsx"
        node = graph._find_by_path(drive_id, "/Reports/New.xlsx")
        assert [s.name for s in graph.workbooks[node["id"]]["sheets"]] == ["Data", "Notes"]

        resp = post(client, "create-file", fileName="New.xlsx", folderPath="/Reports")
        assert resp.status_code == 409

    def test_create_file_requires_xlsx(self, client, docs_drive):
        assert post(client, "create-file", fileName="data.csv").status_code == 400

    def test_delete_file_never_auto_selects(self, client, graph, docs_drive):
        resp = client.delete("/api/excel/delete-file", json={})
        assert resp.status_code == 400
        _, item_id = docs_drive
        assert item_id in graph.nodes

        resp = client.delete("/api/excel/delete-file", json={"itemName": "Budget.xlsx"})
        assert resp.status_code == 200
        assert item_id not in graph.nodes


class TestDiscovery:
    def test_worksheets(self, client, docs_drive):
        resp = client.get("/api/excel/worksheets?itemName=Budget.xlsx")
        data = resp.get_json()["data"]
        assert [s["name"] for s in data["worksheets"]] == ["Summary"]
        assert data["itemPath"] == "/Finance/Budget.xlsx"

    def test_workbooks_and_search(self, client, graph, docs_drive):
        drive_id, _ = docs_drive
        graph.add_workbook(drive_id, "/notes.txt")
        names = [w["name"] for w in client.get("/api/excel/workbooks").get_json()["data"]]
        assert names == ["Budget.xlsx"]
        found = client.get("/api/excel/search?q=budget").get_json()["data"]
        assert [f["name"] for f in found] == ["Budget.xlsx"]

    def test_metadata(self, client, graph):
        drive_id = graph.add_drive("Documents")
        graph.add_workbook(drive_id, "/Deals.xlsx", tables={"Deals": {"headers": ["Name"], "rows": []}})
        data = client.get("/api/excel/metadata?itemName=Deals.xlsx").get_json()["data"]
        assert [t["name"] for t in data["tables"]] == ["Deals"]
        assert data["worksheets"][0]["name"] == "Sheet1"

    def test_analyze_scope(self, client, graph):
        drive_id = graph.add_drive("Documents")
        graph.add_workbook(drive_id, "/Two.xlsx", sheets={"A": [["x", "y"]], "B": []})
        data = post(client, "analyze-scope", itemName="Two.xlsx").get_json()["data"]
        assert data["totalSheets"] == 2
        assert [(s["name"], s["rowCount"], s["columnCount"]) for s in data["worksheets"]] == [("A", 1, 2), ("B", 0, 0)]


class TestTablesAndBatch:
    @pytest.fixture
    def deals(self, graph):
        drive_id = graph.add_drive("Documents")
        return graph.add_workbook(
            drive_id, "/Deals.xlsx",
            sheets={"Pipeline": [["Name", "Size"], ["Alpha", 5]]},
            tables={"Deals": {"headers": ["Name", "Size"], "rows": [["Alpha", 5]]}},
        )

    def test_read_table(self, client, deals):
        data = post(client, "read-table", itemName="Deals.xlsx", tableName="Deals").get_json()["data"]
        assert data["headers"] == ["Name", "Size"]
        assert data["records"] == [{"Name": "Alpha", "Size": 5}]

    def test_add_table_rows(self, client, graph, deals):
        resp = post(client, "add-table-rows", itemName="Deals.xlsx", tableName="Deals", values=[["Beta", 7]])
        assert resp.get_json()["data"]["rowsAdded"] == 1
        assert graph.workbooks[deals]["tables"]["Deals"]["rows"][-1] == ["Beta", 7]

    def test_unknown_table(self, client, deals):
        resp = post(client, "read-table", itemName="Deals.xlsx", tableName="Nope")
        assert resp.status_code == 404

    def test_batch_partial_failure(self, client, deals):
        resp = post(client, "batch", itemName="Deals.xlsx", operations=[
            {"type": "read_range", "sheetName": "Pipeline", "range": "A2:B2"},
            {"type": "read_range", "sheetName": "Missing"},
            {"type": "write_range", "sheetName": "Pipeline", "range": "C1", "values": [["Owner"]]},
        ])
        assert resp.status_code == 207
        body = resp.get_json()
        assert body["status"] == "partial_success"
        results = body["data"]["results"]
        assert results[0]["data"]["values"] == [["Alpha", 5]]
        assert results[1]["error"]["code"] == 404
        assert results[1]["error"]["availableSheets"] == ["Pipeline"]
        assert body["data"]["summary"] == {"total": 3, "successful": 2, "failed": 1}

    def test_batch_all_failed(self, client, deals):
        resp = post(client, "batch", itemName="Deals.xlsx", operations=[{"type": "explode"}])
        assert resp.status_code == 400

    def test_batch_needs_operations(self, client, deals):
        assert post(client, "batch", itemName="Deals.xlsx").status_code == 400


class TestFormatting:
    def test_operations_report_individually(self, client, graph, docs_drive):
        resp = post(client, "format", itemName="Budget.xlsx", operations=[
            {"type": "highlight", "range": "A1:C1", "color": "yellow"},
            {"type": "formula", "targetCell": "A1", "expression": "SUM(B2:B3)"},
            {"type": "resizeColumn", "column": "B", "width": 20},
        ])
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["summary"] == {"total": 3, "successful": 2, "failed": 1}
        assert "overwrite" in data["results"][1]["error"]
        fills = graph.calls("PATCH", "/format/fill")
        assert fills[0][2] == {"color": "#FFFF00"}

    def test_formula_into_empty_cell(self, client, graph, docs_drive):
        _, item_id = docs_drive
        resp = post(client, "format", itemName="Budget.xlsx", operations=[
            {"type": "formula", "targetCell": "B4", "expression": "SUM(B2:B3)"},
        ])
        assert resp.get_json()["data"]["summary"]["successful"] == 1
        assert graph.sheet(item_id, "Summary").formulas[(4, 2)] == "=SUM(B2:B3)"

    def test_unknown_operation_type(self, client, docs_drive):
        resp = post(client, "format", itemName="Budget.xlsx", operations=[{"type": "sparkle", "range": "A1"}])
        assert resp.status_code == 400
        assert "highlight" in resp.get_json()["supportedTypes"]

    def test_bad_color(self, client, docs_drive):
        resp = post(client, "format", itemName="Budget.xlsx", operations=[
            {"type": "highlight", "range": "A1", "color": "sunset"},
        ])
        assert resp.get_json()["data"]["results"][0]["status"] == "error"

    def test_operation_that_is_not_an_object(self, client, docs_drive):
        resp = post(client, "format", itemName="Budget.xlsx", operations=["bold"])
        assert resp.status_code == 400
        assert "bold" in resp.get_json()["message"]

    def test_bad_number_fails_only_its_operation(self, client, graph, docs_drive):
        resp = post(client, "format", itemName="Budget.xlsx", operations=[
            {"type": "font", "range": "A1", "fontSize": "big"},
            {"type": "highlight", "range": "A2", "color": "red"},
        ])
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["summary"] == {"total": 2, "successful": 1, "failed": 1}
        assert data["results"][0]["error"] == "fontSize must be a number"
        assert graph.calls("PATCH", "/format/font") == []
        assert graph.calls("PATCH", "/format/fill")[0][2] == {"color": "#FF0000"}

    @pytest.mark.parametrize("op", [
        {"type": "resizeColumn", "column": "B", "width": "wide"},
        {"type": "resizeRow", "row": "2", "height": []},
        {"type": "filter", "range": "A1:C3", "criteria": {"filterOn": "values"}, "columnIndex": "first"},
    ])
    def test_non_numeric_sizes_are_reported(self, client, docs_drive, op):
        resp = post(client, "format", itemName="Budget.xlsx", operations=[op])
        assert resp.status_code == 200
        assert resp.get_json()["data"]["results"][0]["status"] == "error"


class TestPermissions:
    def test_viewer_cannot_write(self, app, client, docs_drive):
        app.config["RBAC_ENABLED"] = True
        resp = client.post(
            "/api/excel/write", json={"itemName": "Budget.xlsx", "values": [[1]]}, headers={"X-User-Role": "viewer"}
        )
        assert resp.status_code == 403
        assert resp.get_json()["requiredPermission"] == "write"

    def test_editor_can_write_but_not_delete(self, app, client, docs_drive):
        app.config["RBAC_ENABLED"] = True
        headers = {"X-User-Role": "editor"}
        resp = client.post("/api/excel/write", json={"itemName": "Budget.xlsx", "values": [[1]]}, headers=headers)
        assert resp.status_code == 200
        resp = client.delete("/api/excel/delete-file", json={"itemName": "Budget.xlsx"}, headers=headers)
        assert resp.status_code == 403

    def test_reads_need_no_role(self, app, client, docs_drive):
        app.config["RBAC_ENABLED"] = True
        assert post(client, "read", itemName="Budget.xlsx").status_code == 200
