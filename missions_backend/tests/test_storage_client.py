from unittest.mock import MagicMock

import pytest
import requests

import missions_backend.storage_client as storage_client
from missions_backend import app as backend_app


def _response(status_code=200, payload=None, content=b"", text=""):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    response.content = content
    response.text = text
    return response


@pytest.fixture()
def session(monkeypatch):
    mock_session = MagicMock()
    mock_session.headers = {}
    monkeypatch.setattr(storage_client.requests, "Session", lambda: mock_session)
    return mock_session


def _client():
    return storage_client.StorageClient(
        url="https://project.supabase.co/", service_key="service-key", timeout=3
    )


def test_client_requires_url_and_key(session):
    with pytest.raises(storage_client.StorageConfigurationError):
        storage_client.StorageClient(url="", service_key="key")
    with pytest.raises(storage_client.StorageConfigurationError):
        storage_client.StorageClient(url="https://project.supabase.co", service_key="")


def test_client_sets_auth_headers(session):
    client = _client()
    assert client.base_url == "https://project.supabase.co/storage/v1"
    assert session.headers["Authorization"] == "Bearer service-key"
    assert session.headers["apikey"] == "service-key"


def test_from_settings_falls_back_to_environment(monkeypatch, session):
    monkeypatch.setattr(backend_app, "load_service_settings", lambda keys: {key: None for key in keys})
    monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "env-key")
    monkeypatch.setenv("SUPABASE_TIMEOUT", "not-a-number")
    client = storage_client.StorageClient.from_settings()
    assert client.base_url == "https://env.supabase.co/storage/v1"
    assert client.timeout == storage_client.DEFAULT_TIMEOUT


def test_list_buckets_returns_names(session):
    session.request.return_value = _response(
        payload=[{"name": "missions-json"}, {"name": "missions-assets"}, {"id": "x"}]
    )
    assert _client().list_buckets() == ["missions-json", "missions-assets"]
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", "https://project.supabase.co/storage/v1/bucket")
    assert session.request.call_args.kwargs["timeout"] == 3


def test_list_pages_until_short_page(monkeypatch, session):
    monkeypatch.setattr(storage_client, "LIST_PAGE_SIZE", 2)
    session.request.side_effect = [
        _response(
            payload=[
                {"name": "missions", "id": None, "metadata": None},
                {"name": "1.json", "id": "a", "updated_at": "2024-01-01", "metadata": {"size": 12}},
            ]
        ),
        _response(payload=[{"name": "2.json", "id": "b", "metadata": {"size": "30"}}]),
    ]

    entries = _client().list("missions-json", "/")

    assert [entry.name for entry in entries] == ["missions", "1.json", "2.json"]
    assert entries[0].is_folder
    assert not entries[1].is_folder
    assert entries[2].size == 30
    offsets = [call.kwargs["json"]["offset"] for call in session.request.call_args_list]
    assert offsets == [0, 2]
    first_body = session.request.call_args_list[0].kwargs["json"]
    assert first_body["prefix"] == ""
    assert first_body["sortBy"] == {"column": "name", "order": "asc"}


def test_download_returns_bytes_and_quotes_path(session):
    session.request.return_value = _response(content=b'{"title": "Loops"}')
    content = _client().download("missions-json", "missions/intro loops.json")
    assert content == b'{"title": "Loops"}'
    _, url = session.request.call_args.args
    assert url.endswith("/object/missions-json/missions/intro%20loops.json")


def test_missing_object_reported_as_400_maps_to_not_found(session):
    session.request.return_value = _response(
        status_code=400, payload={"statusCode": "404", "error": "not_found", "message": "Object not found"}
    )
    with pytest.raises(storage_client.StorageObjectNotFoundError) as exc:
        _client().download("missions-json", "ghost.json")
    assert exc.value.path == "ghost.json"
    assert exc.value.status_code == 400


def test_server_error_raises_request_error(session):
    session.request.return_value = _response(status_code=500, payload=ValueError("no json"), text="boom")
    with pytest.raises(storage_client.StorageRequestError) as exc:
        _client().list_buckets()
    assert not isinstance(exc.value, storage_client.StorageObjectNotFoundError)
    assert "500" in str(exc.value)
    assert "boom" in str(exc.value)


def test_connection_error_is_wrapped(session):
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(storage_client.StorageRequestError) as exc:
        _client().download("missions-json", "1.json")
    assert "refused" in str(exc.value)


def test_invalid_listing_payload_raises(session):
    session.request.return_value = _response(payload={"unexpected": True})
    with pytest.raises(storage_client.StorageRequestError):
        _client().list("missions-json")


def test_upload_sends_upsert_header(session):
    session.request.return_value = _response()
    _client().upload("missions-json", "7.json", b"{}", upsert=True)
    kwargs = session.request.call_args.kwargs
    assert kwargs["data"] == b"{}"
    assert kwargs["headers"]["x-upsert"] == "true"
    assert kwargs["headers"]["Content-Type"] == "application/json"


def test_remove_skips_empty_paths(session):
    session.request.return_value = _response()
    client = _client()
    client.remove("missions-json", ["", "/"])
    session.request.assert_not_called()

    client.remove("missions-json", ["/old.json"])
    method, url = session.request.call_args.args
    assert method == "DELETE"
    assert url.endswith("/object/missions-json")
    assert session.request.call_args.kwargs["json"] == {"prefixes": ["old.json"]}
