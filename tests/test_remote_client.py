import unittest
from datetime import datetime, timezone
from unittest import mock

from wellsync.models import EventRecord, OAuthSession, RemoteConfig
from wellsync.remote_client import (
    AuthorizationError,
    GoogleCalendarProvider,
    RemoteAuthorizationError,
    RemoteCalendarError,
    TokenExchangeError,
    event_from_api,
    event_to_api,
)


def _response(status_code: int = 200, payload: dict | None = None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.json.return_value = payload or {}
    return response


class EventMappingTests(unittest.TestCase):
    def test_timed_event_from_api(self) -> None:
        event = event_from_api(
            {
                "id": "abc",
                "summary": " Dentist ",
                "start": {"dateTime": "2024-01-02T09:00:00+01:00"},
                "end": {"dateTime": "2024-01-02T09:30:00+01:00"},
                "updated": "2024-01-01T10:00:00.000Z",
            },
            "primary",
        )

        self.assertEqual(event.id, "abc")
        self.assertEqual(event.title, "Dentist")
        self.assertEqual(event.start, datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(event.provider, "remote")
        self.assertEqual(event.origin_calendar_id, "primary")
        self.assertFalse(event.all_day)
        self.assertIsNotNone(event.last_modified)

    def test_all_day_event_and_defaults(self) -> None:
        event = event_from_api({"start": {"date": "2024-01-03"}, "end": {"date": "2024-01-04"}}, "primary")

        self.assertTrue(event.all_day)
        self.assertEqual(event.title, "Untitled Event")
        self.assertEqual(event.start, datetime(2024, 1, 3, tzinfo=timezone.utc))
        self.assertEqual(event.end, datetime(2024, 1, 4, tzinfo=timezone.utc))

    def test_event_without_start_is_skipped(self) -> None:
        self.assertIsNone(event_from_api({"summary": "broken"}, "primary"))

    def test_missing_end_defaults_to_one_hour(self) -> None:
        event = event_from_api({"start": {"dateTime": "2024-01-02T09:00:00Z"}}, "primary")
        self.assertEqual(event.end, datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc))

    def test_event_to_api(self) -> None:
        start = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
        body = event_to_api(EventRecord(title="Run", start=start, end=start.replace(hour=10), location="Park"))

        self.assertEqual(body["start"], {"dateTime": "2024-01-02T09:00:00+00:00"})
        self.assertEqual(body["location"], "Park")
        all_day = event_to_api(EventRecord(title="Trip", start=start, end=start, all_day=True))
        self.assertEqual(all_day["start"], {"date": "2024-01-02"})


class GoogleCalendarProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = RemoteConfig(
            client_id="client-1",
            client_secret="secret-1",
            redirect_uri="http://localhost:8080/oauth/callback",
            api_base_url="https://calendar.example.com/v3",
            calendar_id="me@example.com",
            page_size=2,
        )
        self.provider = GoogleCalendarProvider(self.config)
        self.session = OAuthSession(access_token="token-1")
        self.start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.end = datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_list_events_follows_pagination(self) -> None:
        pages = [
            _response(
                payload={
                    "items": [
                        {"id": "1", "summary": "Yoga", "start": {"dateTime": "2024-01-05T08:00:00Z"}},
                        {"id": "2", "status": "cancelled", "start": {"dateTime": "2024-01-06T08:00:00Z"}},
                    ],
                    "nextPageToken": "page-2",
                }
            ),
            _response(payload={"items": [{"id": "3", "summary": "Lunch", "start": {"date": "2024-01-07"}}]}),
        ]
        seen_params = []

        def fake_get(url, headers, params, timeout):
            seen_params.append(dict(params))
            return pages.pop(0)

        with mock.patch("wellsync.remote_client.requests.get", side_effect=fake_get) as get_mock:
            events = self.provider.list_events(self.session, self.start, self.end)

        self.assertEqual([event.id for event in events], ["1", "3"])
        self.assertEqual(get_mock.call_count, 2)
        url = get_mock.call_args.args[0]
        self.assertEqual(url, "https://calendar.example.com/v3/calendars/me%40example.com/events")
        self.assertEqual(get_mock.call_args.kwargs["headers"]["Authorization"], "Bearer token-1")
        self.assertEqual(seen_params[0]["timeMin"], "2024-01-01T00:00:00Z")
        self.assertEqual(seen_params[0]["singleEvents"], "true")
        self.assertEqual(seen_params[0]["maxResults"], 2)
        self.assertNotIn("pageToken", seen_params[0])
        self.assertEqual(seen_params[1]["pageToken"], "page-2")

    def test_repeated_page_token_stops_paging(self) -> None:
        page = {"items": [], "nextPageToken": "same"}
        with mock.patch(
            "wellsync.remote_client.requests.get",
            side_effect=lambda *args, **kwargs: _response(payload=page),
        ) as get_mock:
            self.assertEqual(self.provider.list_events(self.session, self.start, self.end), [])

        self.assertEqual(get_mock.call_count, 2)

    def test_rejected_token_raises_authorization_error(self) -> None:
        with mock.patch("wellsync.remote_client.requests.get", return_value=_response(401)):
            with self.assertRaises(RemoteAuthorizationError):
                self.provider.list_events(self.session, self.start, self.end)

    def test_server_error_raises_calendar_error(self) -> None:
        with mock.patch("wellsync.remote_client.requests.get", return_value=_response(500, text="backend")):
            with self.assertRaises(RemoteCalendarError) as ctx:
                self.provider.list_events(self.session, self.start, self.end)

        self.assertNotIsInstance(ctx.exception, RemoteAuthorizationError)
        self.assertIn("500", str(ctx.exception))

    def test_create_event_posts_json(self) -> None:
        start = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
        event = EventRecord(title="Run", start=start, end=start.replace(hour=10))
        with mock.patch(
            "wellsync.remote_client.requests.post",
            return_value=_response(payload={"id": "new-1"}),
        ) as post_mock:
            new_id = self.provider.create_event(self.session, event)

        self.assertEqual(new_id, "new-1")
        self.assertEqual(post_mock.call_args.kwargs["json"]["summary"], "Run")

    @mock.patch("wellsync.remote_client.Flow")
    def test_authorization_round_trip(self, flow_cls: mock.Mock) -> None:
        flow = flow_cls.from_client_config.return_value
        flow.authorization_url.return_value = ("https://auth.example.com/?state=s1", "s1")
        flow.credentials = mock.Mock(token="access-1", expiry=datetime(2030, 1, 1), scopes=["scope-a"])

        request = self.provider.begin_authorization()
        session = self.provider.exchange_code("code-1", request.state)

        self.assertEqual(request.url, "https://auth.example.com/?state=s1")
        self.assertEqual(request.state, "s1")
        flow.authorization_url.assert_called_once_with(
            access_type="offline", include_granted_scopes="true", prompt="consent"
        )
        flow.fetch_token.assert_called_once_with(code="code-1")
        self.assertEqual(session.access_token, "access-1")
        self.assertEqual(session.expires_at, datetime(2030, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(session.scopes, ("scope-a",))
        client_config = flow_cls.from_client_config.call_args.args[0]
        self.assertEqual(client_config["web"]["client_id"], "client-1")

    @mock.patch("wellsync.remote_client.Flow")
    def test_exchange_rejects_unknown_state(self, flow_cls: mock.Mock) -> None:
        flow_cls.from_client_config.return_value.authorization_url.return_value = ("https://auth", "s1")
        self.provider.begin_authorization()

        with self.assertRaises(AuthorizationError):
            self.provider.exchange_code("code-1", "s2")

    @mock.patch("wellsync.remote_client.Flow")
    def test_exchange_failure_raises_token_exchange_error(self, flow_cls: mock.Mock) -> None:
        flow = flow_cls.from_client_config.return_value
        flow.authorization_url.return_value = ("https://auth", "s1")
        flow.fetch_token.side_effect = ValueError("invalid_grant")
        self.provider.begin_authorization()

        with self.assertRaises(TokenExchangeError):
            self.provider.exchange_code("code-1", "s1")
        # The pending flow is consumed even on failure.
        with self.assertRaises(AuthorizationError):
            self.provider.exchange_code("code-1", "s1")

    @mock.patch("wellsync.remote_client.Flow")
    def test_only_latest_authorization_is_pending(self, flow_cls: mock.Mock) -> None:
        flow = flow_cls.from_client_config.return_value
        flow.authorization_url.side_effect = [(f"https://auth/?state=s{i}", f"s{i}") for i in range(100)]
        flow.credentials = mock.Mock(token="access-1", expiry=None, scopes=None)

        for _ in range(100):
            self.provider.begin_authorization()

        self.assertEqual(self.provider._pending[0], "s99")
        session = self.provider.exchange_code("code-1", "s99")
        self.assertEqual(session.access_token, "access-1")
        self.assertFalse(self.provider.has_pending_authorization)

    @mock.patch("wellsync.remote_client.Flow")
    def test_superseded_authorization_cannot_complete(self, flow_cls: mock.Mock) -> None:
        flow_cls.from_client_config.return_value.authorization_url.side_effect = [
            ("https://auth/?state=s1", "s1"),
            ("https://auth/?state=s2", "s2"),
        ]
        self.provider.begin_authorization()
        self.provider.begin_authorization()

        with self.assertRaises(AuthorizationError):
            self.provider.exchange_code("code-1", "s1")

    @mock.patch("wellsync.remote_client.Flow")
    def test_cancel_authorization_clears_pending_flow(self, flow_cls: mock.Mock) -> None:
        flow_cls.from_client_config.return_value.authorization_url.return_value = ("https://auth", "s1")
        self.provider.begin_authorization()

        self.provider.cancel_authorization()

        self.assertFalse(self.provider.has_pending_authorization)
        with self.assertRaises(AuthorizationError):
            self.provider.exchange_code("code-1", "s1")

    def test_begin_authorization_requires_config(self) -> None:
        with self.assertRaises(RuntimeError):
            GoogleCalendarProvider(RemoteConfig()).begin_authorization()


if __name__ == "__main__":
    unittest.main()
