import json
from pathlib import Path

from app.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_rule_item_path_exposes_console_put_alias():
    methods = set(app.openapi()["paths"]["/automation/rules/{rule_id}"].keys())
    assert {"patch", "put", "delete"} <= methods


def test_trigger_request_body_is_documented_in_camel_case():
    operation = app.openapi()["paths"]["/automation/trigger"]["post"]
    schema = operation["requestBody"]["content"]["application/json"]["schema"]
    assert {"sheetName", "columnName", "rowData"} <= set(schema["required"])
