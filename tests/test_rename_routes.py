# tests/test_rename_routes.py
import pytest


@pytest.fixture
def team(graph):
    drive_id = graph.add_drive("Documents")
    a = graph.add_workbook(drive_id, "/Team/A.xlsx", sheets={"Data": [["x"]], "Notes": []})
    b = graph.add_workbook(drive_id, "/Team/B.xlsx")
    return drive_id, a, b


class TestRenameFile:
    def test_rename(self, client, graph, team):
        _, a, _ = team
        resp = client.post("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": "C.xlsx"})
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert (data["pathBefore"], data["pathAfter"]) == ("/Team/A.xlsx", "/Team/C.xlsx")
        assert graph.nodes[a]["name"] == "C.xlsx"

    def test_renamed_file_resolves_by_new_name(self, app, client, team):
        app.config["NAME_CACHE_TTL_SECONDS"] = 600
        client.post("/api/excel/read", json={"itemName": "A.xlsx", "sheetName": "Data"})
        client.post("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": "C.xlsx"})
        assert client.post("/api/excel/read", json={"itemName": "A.xlsx", "sheetName": "Data"}).status_code == 404
        assert client.post("/api/excel/read", json={"itemName": "C.xlsx", "sheetName": "Data"}).status_code == 200

    def test_name_clash(self, client, team):
        resp = client.patch("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": "B.xlsx"})
        assert resp.status_code == 409
        body = resp.get_json()
        assert body["message"] == "A file named 'B.xlsx' already exists in this location"
        assert body["attemptedPath"] == "/Team/B.xlsx"
        assert body["breadcrumbs"] == ["Team", "A.xlsx"]

    def test_locked_file(self, client, graph, team):
        graph.fail("PATCH", r"/items/item-\d+$", 423, "resourceLocked")
        resp = client.post("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": "C.xlsx"})
        assert resp.status_code == 423
        assert "locked" in resp.get_json()["message"]

    def test_pick_duplicate_by_id(self, client, graph):
        drive_id = graph.add_drive("Documents")
        graph.add_workbook(drive_id, "/2024/Report.xlsx")
        newer = graph.add_workbook(drive_id, "/2025/Report.xlsx")

        resp = client.post("/api/excel/rename-file", json={"itemName": "Report.xlsx", "newName": "Final.xlsx"})
        assert resp.status_code == 409
        picked = next(m for m in resp.get_json()["matches"] if m["path"] == "/2025/Report.xlsx")

        resp = client.post("/api/excel/rename-file", json={"selectedItemId": picked["id"], "newName": "Final.xlsx"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["pathAfter"] == "/2025/Final.xlsx"
        assert graph.nodes[newer]["name"] == "Final.xlsx"

    def test_unknown_selected_id(self, client, team):
        resp = client.post("/api/excel/rename-file", json={"selectedItemId": "item-999", "newName": "C.xlsx"})
        assert resp.status_code == 404
        assert resp.get_json()["availableItems"] == ["/Team/A.xlsx", "/Team/B.xlsx"]

    @pytest.mark.parametrize("new_name", ["", "a/b.xlsx", "bad*.xlsx", "trailing."])
    def test_invalid_names(self, client, team, new_name):
        resp = client.post("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": new_name})
        assert resp.status_code == 400


class TestRenameFolderAndSheet:
    def test_rename_folder(self, client, graph, team):
        resp = client.post("/api/excel/rename-folder", json={"folderName": "team", "newName": "Crew"})
        assert resp.status_code == 200
        assert resp.get_json()["data"]["pathAfter"] == "/Crew"
        found = client.post("/api/excel/read", json={"itemPath": "/Crew/A.xlsx", "sheetName": "Data"})
        assert found.status_code == 200

    def test_rename_folder_needs_a_folder(self, client, team):
        resp = client.post("/api/excel/rename-folder", json={"newName": "Crew"})
        assert resp.status_code == 400

    def test_rename_sheet(self, client, graph, team):
        _, a, _ = team
        resp = client.post("/api/excel/rename-sheet", json={"itemName": "A.xlsx", "sheetName": "Data", "newName": "Raw"})
        assert resp.status_code == 200
        assert [s.name for s in graph.workbooks[a]["sheets"]] == ["Raw", "Notes"]

    def test_rename_sheet_clash(self, client, team):
        resp = client.post("/api/excel/rename-sheet", json={"itemName": "A.xlsx", "sheetName": "Data", "newName": "notes"})
        assert resp.status_code == 409
        assert resp.get_json()["availableSheets"] == ["Data", "Notes"]

    @pytest.mark.parametrize("new_name", ["x" * 32, "a[1]", "a:b"])
    def test_rename_sheet_rules(self, client, team, new_name):
        resp = client.post("/api/excel/rename-sheet", json={"itemName": "A.xlsx", "sheetName": "Data", "newName": new_name})
        assert resp.status_code == 400


class TestSuggestionsAndBatch:
    def test_suggestions(self, client, team):
        resp = client.post("/api/excel/rename-suggestions", json={"oldTerm": "team", "newTerm": "Crew"})
        data = resp.get_json()["data"]
        assert data["total"] == 1
        assert data["suggestions"][0]["suggestedName"] == "Crew"
        assert data["suggestions"][0]["type"] == "folder"

    def test_suggestions_need_terms(self, client, team):
        assert client.post("/api/excel/rename-suggestions", json={"oldTerm": "x"}).status_code == 400

    def test_batch_partial(self, client, graph, team):
        _, a, _ = team
        resp = client.post("/api/excel/batch-rename", json={"operations": [
            {"type": "file", "itemName": "A.xlsx", "newName": "A2.xlsx"},
            {"type": "file", "itemName": "Nope.xlsx", "newName": "x.xlsx"},
            {"type": "sheet", "itemName": "B.xlsx", "newName": "Main"},
        ]})
        assert resp.status_code == 207
        body = resp.get_json()
        assert body["data"]["summary"] == {"total": 3, "successful": 2, "failed": 1}
        assert body["data"]["errors"][0]["index"] == 1
        assert graph.nodes[a]["name"] == "A2.xlsx"

    def test_batch_unknown_type(self, client, team):
        resp = client.post("/api/excel/batch-rename", json={"operations": [{"type": "drive"}]})
        assert resp.status_code == 400
        assert resp.get_json()["data"]["errors"][0]["error"] == "Unknown operation type: drive"

    def test_renames_are_audited(self, client, team):
        client.post("/api/excel/rename-file", json={"itemName": "A.xlsx", "newName": "B.xlsx"})
        logs = client.get("/api/audit/logs?event=FILE_RENAMED&success=false").get_json()
        assert logs["count"] == 1
        assert logs["data"][0]["details"]["pathBefore"] == "/Team/A.xlsx"
