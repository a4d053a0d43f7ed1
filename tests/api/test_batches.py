from tests.services.mock_storage import md5_of

UPLOAD_BUCKET = "upload-bucket"


def test_create_and_get_batch(client):
    r = client.post("/api/v1/batches")
    assert r.status_code == 201
    body = r.json()
    batch_id = body["batch_id"]
    props = body["properties"]
    assert props["bucket"] == UPLOAD_BUCKET
    assert props["baseKey"] == "blobs/"
    assert props["awsSessionToken"] == "temp-token"
    assert props["useS3Accelerate"] is False
    assert body["files"] == {}

    again = client.get(f"/api/v1/batches/{batch_id}")
    assert again.status_code == 200
    assert again.json()["batch_id"] == batch_id


def test_unknown_batch(client):
    r = client.get("/api/v1/batches/unknown")
    assert r.status_code == 404
    assert r.json()["error_code"] == "batch_not_found"


def test_complete_upload_flow(client, mock_storage):
    batch_id = client.post("/api/v1/batches").json()["batch_id"]
    data = b"direct upload payload"
    mock_storage.put(UPLOAD_BUCKET, f"blobs/incoming/{batch_id}/0", data)

    r = client.post(
        f"/api/v1/batches/{batch_id}/files/0/complete",
        json={
            "key": f"blobs/incoming/{batch_id}/0",
            "filename": "payload.txt",
            "mime_type": "text/plain",
        },
    )

    assert r.status_code == 200
    digest = md5_of(data)
    assert r.json() == {
        "blob_key": f"s3:{digest}",
        "digest": digest,
        "filename": "payload.txt",
        "mime_type": "text/plain",
        "length": len(data),
    }
    files = client.get(f"/api/v1/batches/{batch_id}/files").json()
    assert files["0"]["digest"] == digest
    assert mock_storage.keys(UPLOAD_BUCKET) == [f"blobs/{digest}"]


def test_complete_before_upload_is_conflict(client):
    batch_id = client.post("/api/v1/batches").json()["batch_id"]

    r = client.post(
        f"/api/v1/batches/{batch_id}/files/0/complete",
        json={"key": "blobs/incoming/missing", "filename": "x"},
    )

    assert r.status_code == 409
    assert r.json()["error_code"] == "upload_incomplete"


def test_complete_on_unknown_batch(client):
    r = client.post(
        "/api/v1/batches/unknown/files/0/complete",
        json={"key": "k", "filename": "x"},
    )
    assert r.status_code == 404


def test_delete_batch(client):
    batch_id = client.post("/api/v1/batches").json()["batch_id"]

    assert client.delete(f"/api/v1/batches/{batch_id}").status_code == 204
    assert client.delete(f"/api/v1/batches/{batch_id}").status_code == 404


def test_complete_outside_prefix_is_bad_request(client, mock_storage):
    batch_id = client.post("/api/v1/batches").json()["batch_id"]
    mock_storage.put(UPLOAD_BUCKET, "elsewhere/object", b"keep me")

    r = client.post(
        f"/api/v1/batches/{batch_id}/files/0/complete",
        json={"key": "elsewhere/object", "filename": "x"},
    )

    assert r.status_code == 400
    assert r.json()["error_code"] == "invalid_upload_key"
    assert mock_storage.keys(UPLOAD_BUCKET) == ["elsewhere/object"]
