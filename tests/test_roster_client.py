from datetime import date, datetime

import httpx
import pytest

from roster_sync.clients.roster import (
    RosterClient,
    RosterUnauthorizedError,
    RosterUpstreamError,
)


def make_response(status_code: int, payload: dict | None = None, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=payload if payload is not None else {},
        headers=headers,
        request=httpx.Request("GET", "https://roster.test/v3.0/x"),
    )


def make_client(**kwargs: object) -> RosterClient:
    return RosterClient(api_token="token-123", base_url="https://roster.test/v3.0", page_size=2, **kwargs)


def student_payload(source_id: str, last_modified: str, grade: object = "5") -> dict:
    return {
        "data": {
            "id": source_id,
            "email": f"{source_id}@example.com",
            "name": {"first": "Ada", "middle": "", "last": "Lovelace"},
            "last_modified": last_modified,
            "roles": {"student": {"grade": grade, "student_number": 1001, "sis_id": "SIS-1"}},
        }
    }


def test_fetch_entities_follows_next_links_and_maps_students(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    calls: list[tuple[str, dict | None]] = []
    pages = [
        make_response(200, {
            "data": [student_payload("s1", "2024-01-01T00:00:00Z"), student_payload("s2", "2024-01-02T00:00:00Z")],
            "links": [{"rel": "self", "uri": "/v3.0/schools/S1/users"}, {"rel": "next", "uri": "/v3.0/schools/S1/users?starting_after=s2"}],
        }),
        make_response(200, {"data": [student_payload("s3", "2024-01-03T00:00:00.1234567Z", grade=7)], "links": []}),
    ]

    def fake_request(method: str, url: str, params=None, headers=None, timeout=None) -> httpx.Response:
        calls.append((url, params))
        assert headers["Authorization"] == "Bearer token-123"
        return pages.pop(0)

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", fake_request)

    records = client.fetch_entities("S1", "student")

    assert [record.source_id for record in records] == ["s1", "s2", "s3"]
    assert calls[0] == ("https://roster.test/v3.0/schools/S1/users", {"limit": 2, "role": "student"})
    assert calls[1] == ("https://roster.test/v3.0/schools/S1/users?starting_after=s2", None)
    assert records[0].fields == {
        "first_name": "Ada",
        "middle_name": "",
        "last_name": "Lovelace",
        "email": "s1@example.com",
        "grade": "5",
        "student_number": "1001",
        "state_id": "SIS-1",
    }
    assert records[2].fields["grade"] == "7"
    assert records[2].last_modified == datetime(2024, 1, 3, 0, 0, 0, 123456)


def test_fetch_entities_applies_modified_since_window(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    page = make_response(200, {
        "data": [student_payload("old", "2024-01-01T00:00:00Z"), student_payload("new", "2024-03-01T00:00:00+0000")],
    })
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: page)

    records = client.fetch_entities("S1", "student", since=datetime(2024, 2, 1))

    assert [record.source_id for record in records] == ["new"]


def test_request_retries_after_rate_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(max_429_retries=2)
    responses = [
        make_response(429, headers={"Retry-After": "3"}),
        make_response(200, {"data": []}),
    ]
    sleeps: list[float] = []
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: responses.pop(0))
    monkeypatch.setattr("roster_sync.clients.roster.time.sleep", sleeps.append)

    assert client._request("GET", "events") == {"data": []}
    assert sleeps == [3.0]


def test_request_gives_up_after_rate_limit_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client(max_429_retries=1)
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: make_response(429))
    monkeypatch.setattr("roster_sync.clients.roster.time.sleep", lambda seconds: None)

    with pytest.raises(RosterUpstreamError):
        client._request("GET", "events")


def test_request_maps_rejected_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: make_response(401))

    with pytest.raises(RosterUnauthorizedError):
        client._request("GET", "events")


def test_request_without_token_fails_before_calling_upstream(monkeypatch: pytest.MonkeyPatch) -> None:
    client = RosterClient(api_token="", base_url="https://roster.test/v3.0")

    def fail_if_called(*args, **kwargs) -> httpx.Response:
        raise AssertionError("no request should be sent without a token")

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", fail_if_called)

    with pytest.raises(RosterUnauthorizedError):
        client._request("GET", "events")


def test_request_maps_server_and_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: make_response(503))

    with pytest.raises(RosterUpstreamError):
        client._request("GET", "events")

    def raise_connect_error(*args, **kwargs) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", raise_connect_error)

    with pytest.raises(RosterUpstreamError):
        client._request("GET", "events")


def test_fetch_events_maps_types_and_roles(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    captured: dict = {}
    page = make_response(200, {
        "data": [
            {"data": {
                "id": "E101",
                "type": "users.updated",
                "created": "2024-05-01T10:00:00Z",
                "data": {"object": "user", "data": {"id": "t1", "name": {"first": "Alan"}, "roles": {"teacher": {"title": "Dr"}}}},
            }},
            {"data": {
                "id": "E102",
                "type": "sections.deleted",
                "data": {"object": "section", "data": {"id": "sec1", "name": "Algebra"}},
            }},
            {"data": {
                "id": "E103",
                "type": "courses.created",
                "data": {"object": "course", "data": {"id": "c1"}},
            }},
        ],
    })

    def fake_request(method: str, url: str, params=None, headers=None, timeout=None) -> httpx.Response:
        captured["params"] = params
        return page

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", fake_request)

    events = client.fetch_events("S1", since_event_id="E100")

    assert captured["params"] == {"limit": 2, "school": "S1", "starting_after": "E100"}
    assert [(event.id, event.entity_type, event.action, event.source_id) for event in events] == [
        ("E101", "teacher", "updated", "t1"),
        ("E102", "section", "deleted", "sec1"),
        ("E103", "course", "created", "c1"),
    ]
    assert events[0].payload["first_name"] == "Alan"
    assert events[0].payload["title"] == "Dr"
    assert events[0].created == datetime(2024, 5, 1, 10, 0)


def test_fetch_latest_event_id(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    captured: dict = {}

    def fake_request(method: str, url: str, params=None, headers=None, timeout=None) -> httpx.Response:
        captured["params"] = params
        return make_response(200, {"data": [{"data": {"id": "E555", "type": "users.created"}}]})

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", fake_request)

    assert client.fetch_latest_event_id("S1") == "E555"
    assert captured["params"] == {"school": "S1", "ending_before": "last", "limit": 1}

    monkeypatch.setattr(
        "roster_sync.clients.roster.httpx.request",
        lambda *args, **kwargs: make_response(200, {"data": []}),
    )
    assert client.fetch_latest_event_id("S1") is None


def test_fetch_sections_carries_enrollment_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    page = make_response(200, {
        "data": [
            {"data": {
                "id": "sec1",
                "name": "Algebra I",
                "period": 2,
                "course": "c1",
                "term_id": "term1",
                "students": ["s1", "s2"],
                "teachers": ["t1"],
                "teacher": "t1",
            }},
            {"data": {"id": "sec2", "name": "Chemistry"}},
        ],
    })
    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", lambda *args, **kwargs: page)

    records = client.fetch_entities("S1", "section")

    assert records[0].fields["period"] == "2"
    assert records[0].fields["course_id"] == "c1"
    assert records[0].links == {"students": ["s1", "s2"], "teachers": ["t1"]}
    assert records[1].links is None


def test_fetch_terms_parses_dates(monkeypatch: pytest.MonkeyPatch) -> None:
    client = make_client()
    captured: dict = {}
    page = make_response(200, {
        "data": [
            {"data": {"id": "term1", "name": "Fall", "start_date": "2024-08-15", "end_date": "2024-12-20T00:00:00Z"}},
            {"data": {"id": "term2", "name": "Spring", "start_date": "not-a-date"}},
        ],
    })

    def fake_request(method: str, url: str, params=None, headers=None, timeout=None) -> httpx.Response:
        captured["url"] = url
        return page

    monkeypatch.setattr("roster_sync.clients.roster.httpx.request", fake_request)

    records = client.fetch_entities("S1", "term")

    assert captured["url"] == "https://roster.test/v3.0/terms"
    assert records[0].fields == {"name": "Fall", "start_date": date(2024, 8, 15), "end_date": date(2024, 12, 20)}
    assert records[1].fields["start_date"] is None
    assert records[1].fields["end_date"] is None
