import json
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytz

from calmirror.services import (
    CalendarServiceError, EventListError, ProfileFetchError, ProviderUnavailableError,
    RefreshFailed, TokenExchangeError
)
from calmirror.services.base import sanitize_body
from calmirror.services.google import (
    GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, GoogleCalendarService
)


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_service(settings, recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return GoogleCalendarService(settings, http_client=client)


def form(request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


TOKEN_JSON = {
    'access_token': 'ya29.access',
    'refresh_token': '1//refresh',
    'expires_in': 3599,
    'scope': 'openid https://www.googleapis.com/auth/calendar.readonly',
    'token_type': 'Bearer',
}


@pytest.mark.asyncio
async def test_exchange_posts_verbatim_redirect_uri(settings):
    recorder = Recorder(httpx.Response(200, json=TOKEN_JSON))
    service = make_service(settings, recorder)

    tokens = await service.exchange_code('auth-code', settings.google_redirect_uri)

    assert tokens.access_token == 'ya29.access'
    assert tokens.refresh_token == '1//refresh'
    assert tokens.expires_in == 3599
    request = recorder.requests[0]
    assert str(request.url) == GOOGLE_TOKEN_URL
    body = form(request)
    assert body == {
        'client_id': settings.google_client_id,
        'client_secret': settings.google_client_secret,
        'code': 'auth-code',
        'grant_type': 'authorization_code',
        'redirect_uri': 'https://app.example.com/api/auth/google/calendar/callback',
    }


@pytest.mark.asyncio
async def test_redirect_uri_mismatch_is_distinguishable(settings):
    recorder = Recorder(httpx.Response(400, json={
        'error': 'redirect_uri_mismatch',
        'error_description': 'Bad Request',
    }))
    service = make_service(settings, recorder)

    with pytest.raises(TokenExchangeError) as exc_info:
        await service.exchange_code('auth-code', 'https://wrong.example.com/cb')

    error = exc_info.value
    assert error.redirect_uri_mismatch
    assert error.status_code == 400
    assert 'redirect_uri_mismatch' in error.body
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_exchange_rejection_is_not_retried(settings):
    recorder = Recorder(httpx.Response(400, json={'error': 'invalid_grant'}))
    service = make_service(settings, recorder)

    with pytest.raises(TokenExchangeError) as exc_info:
        await service.exchange_code('used-code', settings.google_redirect_uri)

    assert not exc_info.value.redirect_uri_mismatch
    assert exc_info.value.provider_error == 'invalid_grant'
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_transport_error_is_retried_once(settings):
    recorder = Recorder(
        httpx.ConnectError("connection refused"),
        httpx.Response(200, json=TOKEN_JSON),
    )
    service = make_service(settings, recorder)

    tokens = await service.exchange_code('auth-code', settings.google_redirect_uri)

    assert tokens.access_token == 'ya29.access'
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_persistent_transport_error_gives_up_after_retry(settings):
    recorder = Recorder(
        httpx.ReadTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
        httpx.Response(200, json=TOKEN_JSON),
    )
    service = make_service(settings, recorder)

    with pytest.raises(ProviderUnavailableError):
        await service.refresh_access_token('1//refresh')

    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_refresh_uses_refresh_grant(settings):
    recorder = Recorder(httpx.Response(200, json={
        'access_token': 'ya29.new', 'expires_in': 3600, 'scope': '', 'token_type': 'Bearer'
    }))
    service = make_service(settings, recorder)

    tokens = await service.refresh_access_token('1//refresh')

    assert tokens.access_token == 'ya29.new'
    assert tokens.refresh_token is None
    body = form(recorder.requests[0])
    assert body['grant_type'] == 'refresh_token'
    assert body['refresh_token'] == '1//refresh'
    assert 'redirect_uri' not in body


@pytest.mark.asyncio
async def test_revoked_refresh_token_raises_refresh_failed(settings):
    recorder = Recorder(httpx.Response(400, json={
        'error': 'invalid_grant', 'error_description': 'Token has been expired or revoked.'
    }))
    service = make_service(settings, recorder)

    with pytest.raises(RefreshFailed) as exc_info:
        await service.refresh_access_token('1//revoked')

    assert exc_info.value.provider_error == 'invalid_grant'
    assert '1//revoked' not in str(exc_info.value)


@pytest.mark.asyncio
async def test_refresh_server_error_is_not_refresh_failed(settings):
    recorder = Recorder(httpx.Response(503, text='unavailable'))
    service = make_service(settings, recorder)

    with pytest.raises(CalendarServiceError) as exc_info:
        await service.refresh_access_token('1//refresh')

    assert not isinstance(exc_info.value, RefreshFailed)
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_fetch_profile_sends_bearer(settings):
    recorder = Recorder(httpx.Response(200, json={
        'id': '1234', 'email': 'person@example.com', 'verified_email': True, 'name': 'Pat'
    }))
    service = make_service(settings, recorder)

    profile = await service.fetch_profile('ya29.access')

    assert profile.email == 'person@example.com'
    assert profile.picture is None
    request = recorder.requests[0]
    assert str(request.url) == GOOGLE_USERINFO_URL
    assert request.headers['Authorization'] == 'Bearer ya29.access'


@pytest.mark.asyncio
async def test_fetch_profile_failure(settings):
    recorder = Recorder(httpx.Response(401, json={'error': 'invalid_token'}))
    service = make_service(settings, recorder)

    with pytest.raises(ProfileFetchError) as exc_info:
        await service.fetch_profile('ya29.access')
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_fetch_profile_without_email_is_failure(settings):
    recorder = Recorder(httpx.Response(200, json={'id': '1234'}))
    service = make_service(settings, recorder)

    with pytest.raises(ProfileFetchError):
        await service.fetch_profile('ya29.access')


@pytest.mark.asyncio
async def test_list_events_follows_pages(settings):
    recorder = Recorder(
        httpx.Response(200, json={'items': [{'id': 'a'}, {'id': 'b'}], 'nextPageToken': 'p2'}),
        httpx.Response(200, json={'items': [{'id': 'c'}]}),
    )
    service = make_service(settings, recorder)
    time_min = datetime(2025, 1, 15, tzinfo=pytz.UTC)
    time_max = time_min + timedelta(days=30)

    items = await service.list_events('ya29.access', 'primary', time_min, time_max, 250)

    assert [item['id'] for item in items] == ['a', 'b', 'c']
    first, second = recorder.requests
    assert urlparse(str(first.url)).path == '/calendar/v3/calendars/primary/events'
    params = parse_qs(urlparse(str(first.url)).query)
    assert params['singleEvents'] == ['true']
    assert params['orderBy'] == ['startTime']
    assert params['maxResults'] == ['250']
    assert params['timeMin'] == [time_min.isoformat()]
    assert params['timeMax'] == [time_max.isoformat()]
    assert 'pageToken' not in params
    assert parse_qs(urlparse(str(second.url)).query)['pageToken'] == ['p2']


@pytest.mark.asyncio
async def test_list_events_error(settings):
    recorder = Recorder(httpx.Response(403, json={
        'error': {'code': 403, 'message': 'Insufficient Permission', 'status': 'PERMISSION_DENIED'}
    }))
    service = make_service(settings, recorder)
    now = datetime.now(pytz.UTC)

    with pytest.raises(EventListError) as exc_info:
        await service.list_events('ya29.access', 'primary', now, now + timedelta(days=1), 250)

    assert exc_info.value.provider_error == 'PERMISSION_DENIED'
    assert str(exc_info.value).startswith('Failed to fetch events')


def test_authorization_url(settings):
    service = GoogleCalendarService(settings, http_client=httpx.AsyncClient())
    url = service.authorization_url('signed-state', settings.google_redirect_uri)

    params = parse_qs(urlparse(url).query)
    assert params['state'] == ['signed-state']
    assert params['redirect_uri'] == [settings.google_redirect_uri]
    assert params['access_type'] == ['offline']
    assert params['prompt'] == ['consent']
    assert params['response_type'] == ['code']
    assert 'https://www.googleapis.com/auth/calendar.readonly' in params['scope'][0].split()


def test_sanitize_body_masks_tokens():
    body = json.dumps({'access_token': 'ya29.secret', 'refresh_token': '1//secret', 'x': 1})
    cleaned = sanitize_body(body)

    assert 'ya29.secret' not in cleaned
    assert '1//secret' not in cleaned
    assert sanitize_body('a' * 2000).endswith('...')
