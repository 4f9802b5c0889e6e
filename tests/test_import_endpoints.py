import asyncio
import json
from io import BytesIO

from openpyxl import Workbook
from sqlalchemy.orm import Session

from conftest import ALICE_ID, BOB_ID, fetch_customers

SAMPLE_CSV = b"Name,Email,Phone\nJane Doe,jane@x.com,555-1111\n,,\nBob K,bob@x.com,555-2222"


def upload(client, headers, filename, content, **form):
    return client.post(
        "/customers/upload-file",
        files={"file": (filename, content, "application/octet-stream")},
        data=form,
        headers=headers,
    )


def test_csv_upload_skips_blank_rows(client, engine, admin_headers):
    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["totalRecords"] == 2
    assert body["importedCount"] == 2
    assert body["errorCount"] == 0
    assert body["headerMapping"]["headerRow"] == 0

    rows = fetch_customers(engine)
    assert [r["name"] for r in rows] == ["Jane Doe", "Bob K"]
    assert [r["phone"] for r in rows] == ["555-1111", "555-2222"]
    assert all(r["status"] == "pending" for r in rows)
    assert all(not r["archived"] for r in rows)


def test_upload_imports_every_row_in_small_batches(client, engine, admin_headers):
    lines = ["First Name,Last Name,Email"] + [f"Lead,Number{i},lead{i}@x.com" for i in range(25)]

    response = upload(client, admin_headers, "many.csv", "\n".join(lines).encode("utf-8"), batch_size="7")

    assert response.status_code == 200
    assert response.json()["importedCount"] == 25
    rows = fetch_customers(engine)
    assert len(rows) == 25
    assert rows[0]["name"] == "Lead Number0"


def test_xlsx_upload_detects_header_below_title(client, engine, admin_headers):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Leads from the spring fair"])
    sheet.append(["Full Name", "E-mail", "Mobile", "Assigned To", "Address"])
    sheet.append(["Ann Lee", "ann@x.com", 5551234567, "bob", "4 Elm Rd"])
    sheet.append(["Cy Twombly", "cy@x.com", 5559876543, "", ""])
    buffer = BytesIO()
    workbook.save(buffer)

    response = upload(client, admin_headers, "fair.xlsx", buffer.getvalue(), assigned_to=str(ALICE_ID))

    assert response.status_code == 200
    body = response.json()
    assert body["format"] == "xlsx"
    assert body["headerMapping"]["headerRow"] == 1
    assert body["importedCount"] == 2

    rows = fetch_customers(engine)
    assert rows[0]["phone"] == "5551234567"
    assert rows[0]["assigned_to"] == BOB_ID
    assert rows[0]["notes"] == "4 Elm Rd"
    assert rows[1]["assigned_to"] == ALICE_ID


def test_preview_reports_mapping_without_writing(client, engine, admin_headers):
    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV, import_mode="preview")

    assert response.status_code == 200
    body = response.json()
    assert body["mode"] == "preview"
    assert body["totalRecords"] == 2
    assert body["headerMapping"]["columns"]["email"] == 1
    assert body["sample"][0]["name"] == "Jane Doe"
    assert fetch_customers(engine) == []


def test_column_mapping_overrides_positional_fallback(client, engine, admin_headers):
    content = b"555-1111,Jane Doe,jane@x.com\n555-2222,Bob K,bob@x.com\n"

    response = upload(
        client,
        admin_headers,
        "raw.csv",
        content,
        column_mapping=json.dumps({"phone": 0, "name": 1, "email": 2, "address": -1}),
    )

    assert response.status_code == 200
    assert response.json()["headerMapping"]["headerRow"] is None
    rows = fetch_customers(engine)
    assert [(r["name"], r["email"], r["phone"]) for r in rows] == [
        ("Jane Doe", "jane@x.com", "555-1111"),
        ("Bob K", "bob@x.com", "555-2222"),
    ]


def test_upload_rejects_bad_input(client, engine, admin_headers):
    response = upload(client, admin_headers, "notes.txt", b"a,b\nc,d\n")
    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]

    response = upload(client, admin_headers, "empty.csv", b"Name,Email,Phone\n")
    assert response.status_code == 400
    assert response.json()["detail"] == "CSV file is empty or invalid"

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV, assigned_to="999")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid assigned_to"

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV, column_mapping="[1, 2]")
    assert response.status_code == 400

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV, import_mode="merge")
    assert response.status_code == 400

    response = upload(client, admin_headers, "blank.csv", b"Region,Name\nNorth,\nSouth,\n")
    assert response.status_code == 400
    assert response.json()["detail"] == "No valid customer data found in file"

    assert fetch_customers(engine) == []


def test_upload_over_limit_is_rejected(client, engine, app, admin_headers):
    app.state.settings.max_upload_mb = 0

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV)

    assert response.status_code == 413
    assert fetch_customers(engine) == []


def test_upload_requires_admin(client, alice_headers):
    response = upload(client, alice_headers, "leads.csv", SAMPLE_CSV)

    assert response.status_code == 403


def test_bulk_upload_counts_failed_batch_in_full(client, engine, admin_headers):
    customers = [
        {"name": "One", "email": "one@x.com"},
        {"firstName": "Two", "lastName": "Person"},
        {"name": "Three", "assignedTo": 999},
        {"name": "Four"},
        {"name": "Five", "status": "interested", "comments": "warm lead"},
    ]

    response = client.post(
        "/customers/bulk-upload",
        json={"customers": customers, "batchSize": 2},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["totalRecords"] == 5
    assert body["importedCount"] == 3
    assert body["errorCount"] == 2
    assert body["errors"][0].startswith("Batch 2:")

    rows = fetch_customers(engine)
    assert [r["name"] for r in rows] == ["One", "Two Person", "Five"]
    assert rows[2]["status"] == "interested"
    assert rows[2]["notes"] == "warm lead"


def test_bulk_upload_reports_invalid_status_per_row(client, engine, admin_headers):
    response = client.post(
        "/customers/bulk-upload",
        json={"customers": [{"name": "Ok"}, {"name": "Odd", "status": "maybe"}]},
        headers=admin_headers,
    )

    body = response.json()
    assert body["totalRecords"] == 2
    assert body["importedCount"] == 1
    assert body["errorCount"] == 1
    assert "invalid status" in body["errors"][0]


def test_bulk_upload_rejects_empty_payload(client, admin_headers):
    response = client.post("/customers/bulk-upload", json={"customers": []}, headers=admin_headers)

    assert response.status_code == 400


def test_malformed_csv_returns_400_and_writes_nothing(client, engine, admin_headers):
    lines = ["Name,Email,Phone", "Jane Doe,jane@x.com,555-1111", '"Bob K,bob@x.com,555-2222']
    lines += [f"Lead {i},lead{i}@x.com,555-{i:04d}" for i in range(6000)]

    response = upload(client, admin_headers, "broken.csv", "\n".join(lines).encode("utf-8"), batch_size="1")

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Could not read csv file")
    assert fetch_customers(engine) == []


def _record_loop_state(calls, original):
    def wrapper(self):
        try:
            asyncio.get_running_loop()
            calls.append("event loop")
        except RuntimeError:
            calls.append("worker thread")
        return original(self)

    return wrapper


def test_upload_finishes_transaction_on_worker_thread(client, engine, admin_headers, monkeypatch):
    commits = []
    rollbacks = []
    monkeypatch.setattr(Session, "commit", _record_loop_state(commits, Session.commit))
    monkeypatch.setattr(Session, "rollback", _record_loop_state(rollbacks, Session.rollback))

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV)
    assert response.status_code == 200
    assert commits == ["worker thread"]

    response = upload(client, admin_headers, "leads.csv", SAMPLE_CSV, import_mode="preview")
    assert response.status_code == 200
    assert rollbacks == ["worker thread"]
    assert len(fetch_customers(engine)) == 2
