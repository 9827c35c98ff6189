"""End-to-end tests for ApiClient over an in-process upstream.

The upstream is an httpx.MockTransport serving both the token endpoint and a
handful of API operations, so the whole stack runs: config loading, token
grant and caching, request building, dispatch, decoding and the expired-token
retry.

Tests cover:
- Token fetched once and reused across calls
- Expired token: one refresh and one retry
- JSON, form-with-file and query-only operations
- Streaming media download
- Upstream failures surfaced as ResponseError / ApiResultError
"""

import json
from pathlib import Path

import httpx
import pytest
from pydantic import BaseModel

from api_invoker.client import ApiClient
from api_invoker.config_loader import load_invoker_config
from api_invoker.descriptor import DescriptorBuilder
from api_invoker.errors import ApiResultError, ResponseError
from api_invoker.models import BodyMode, CredentialConfig, FileKind, InvokerConfig, ValueKind
from api_invoker.response import ResponseStream

BASE_URL = "https://api.example.test"


class TagIn(BaseModel):
    name: str


class CreateTag(BaseModel):
    tag: TagIn


class TagOut(BaseModel):
    id: int
    name: str


class CreatedTag(BaseModel):
    tag: TagOut


class UploadDescription(BaseModel):
    title: str
    introduction: str


CREATE_TAG = (
    DescriptorBuilder("create_tag", "POST", "/cgi-bin/tags/create", BodyMode.JSON)
    .json_body()
    .returns(CreatedTag)
    .build()
)

GET_USER_INFO = (
    DescriptorBuilder("get_user_info", "GET", "/cgi-bin/user/info")
    .query("openid")
    .query("lang")
    .returns(dict)
    .build()
)

UPLOAD_VIDEO = (
    DescriptorBuilder("upload_video", "POST", "/cgi-bin/material/add_material", BodyMode.FORM)
    .query("type")
    .form_file("media", FileKind.PATH)
    .form_field("description", kind=ValueKind.COMPLEX)
    .returns(dict)
    .build()
)

GET_MEDIA = (
    DescriptorBuilder("get_media", "GET", "/cgi-bin/media/get")
    .query("media_id")
    .returns(ResponseStream)
    .build()
)


def json_response(payload: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )


class FakeUpstream:
    """Token endpoint plus a few API operations.

    Tokens are issued as ACCESS-1, ACCESS-2, ...; only the most recently
    issued one is accepted unless expire_current() has been called.
    """

    def __init__(self) -> None:
        self.issued = 0
        self.current_valid = True
        self.api_calls: list[httpx.Request] = []

    def expire_current(self) -> None:
        self.current_valid = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/cgi-bin/token":
            assert request.url.params["grant_type"] == "client_credential"
            self.issued += 1
            self.current_valid = True
            return json_response({"access_token": f"ACCESS-{self.issued}", "expires_in": 7200})

        self.api_calls.append(request)
        token = request.url.params.get("access_token")
        if not self.current_valid or token != f"ACCESS-{self.issued}":
            return json_response({"errcode": 42001, "errmsg": "access_token expired"})
        return self.route(request)

    def route(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/cgi-bin/tags/create":
            body = json.loads(request.content)
            return json_response({"tag": {"id": 134, "name": body["tag"]["name"]}})
        if path == "/cgi-bin/user/info":
            if request.url.params["openid"] == "missing":
                return json_response({"errcode": 46004, "errmsg": "user not exist"})
            return json_response(
                {"openid": request.url.params["openid"], "language": request.url.params["lang"]}
            )
        if path == "/cgi-bin/material/add_material":
            content = request.content
            assert b'filename="intro.mp4"' in content
            assert b"MP4DATA" in content
            assert b'{"title":"Intro","introduction":"First video"}' in content
            return json_response({"media_id": "MEDIA_1"})
        if path == "/cgi-bin/media/get":
            return httpx.Response(
                200,
                content=b"\xff\xd8JPEG",
                headers={
                    "Content-Type": "image/jpeg",
                    "Content-Disposition": 'attachment; filename="MEDIA_1.jpg"',
                },
            )
        return httpx.Response(404, content=b"no such api")


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def config() -> InvokerConfig:
    return InvokerConfig(
        base_url=BASE_URL,
        credential=CredentialConfig(
            app_id="wx-app", app_secret="s3cret", token_url=f"{BASE_URL}/cgi-bin/token"
        ),
    )


@pytest.fixture
def api(config: InvokerConfig, upstream: FakeUpstream):
    with ApiClient.from_config(config, transport=httpx.MockTransport(upstream)) as client:
        yield client


class TestTokenLifecycle:
    def test_token_fetched_once_and_reused(self, api: ApiClient, upstream: FakeUpstream) -> None:
        api.call(GET_USER_INFO, "o-1", "zh_CN")
        api.call(GET_USER_INFO, "o-2", "en")
        assert upstream.issued == 1
        assert [r.url.params["access_token"] for r in upstream.api_calls] == ["ACCESS-1"] * 2

    def test_expired_token_refreshed_and_retried(
        self, api: ApiClient, upstream: FakeUpstream
    ) -> None:
        api.call(GET_USER_INFO, "o-1", "zh_CN")
        upstream.expire_current()

        result = api.call(GET_USER_INFO, "o-1", "zh_CN")

        assert result == {"openid": "o-1", "language": "zh_CN"}
        assert upstream.issued == 2
        assert [r.url.params["access_token"] for r in upstream.api_calls] == [
            "ACCESS-1",
            "ACCESS-1",
            "ACCESS-2",
        ]


class TestOperations:
    def test_json_body(self, api: ApiClient, upstream: FakeUpstream) -> None:
        created = api.call(CREATE_TAG, CreateTag(tag=TagIn(name="广东")))
        assert created == CreatedTag(tag=TagOut(id=134, name="广东"))
        request = upstream.api_calls[0]
        assert request.headers["Content-Type"] == "application/json"
        assert request.content == '{"tag":{"name":"广东"}}'.encode("utf-8")

    def test_operation_function(self, api: ApiClient) -> None:
        get_user_info = api.operation(GET_USER_INFO)
        assert get_user_info.__name__ == "get_user_info"
        assert get_user_info("o-9", "en") == {"openid": "o-9", "language": "en"}

    def test_form_upload_from_path(self, api: ApiClient, tmp_path: Path) -> None:
        video = tmp_path / "intro.mp4"
        video.write_bytes(b"MP4DATA")
        result = api.call(
            UPLOAD_VIDEO,
            "video",
            video,
            UploadDescription(title="Intro", introduction="First video"),
        )
        assert result == {"media_id": "MEDIA_1"}

    def test_media_download_streams(self, api: ApiClient) -> None:
        with api.call(GET_MEDIA, "MEDIA_1") as media:
            assert media.media_type == "image/jpeg"
            assert media.filename == "MEDIA_1.jpg"
            assert b"".join(media.iter_bytes()) == b"\xff\xd8JPEG"


class TestFailures:
    def test_api_error_code(self, api: ApiClient) -> None:
        with pytest.raises(ApiResultError) as exc_info:
            api.call(GET_USER_INFO, "missing", "en")
        assert exc_info.value.code == 46004
        assert exc_info.value.message == "user not exist"

    def test_http_error(self, api: ApiClient) -> None:
        unknown = DescriptorBuilder("unknown", "GET", "/cgi-bin/unknown").returns(dict).build()
        with pytest.raises(ResponseError) as exc_info:
            api.call(unknown)
        assert exc_info.value.status_code == 404
        assert exc_info.value.body == b"no such api"

    def test_try_call_returns_error(self, api: ApiClient) -> None:
        result = api.try_call(GET_USER_INFO, "missing", "en")
        assert not result.ok
        assert isinstance(result.error, ApiResultError)


class TestFromYamlConfig:
    def test_client_from_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, upstream: FakeUpstream
    ) -> None:
        monkeypatch.setenv("WX_APP_SECRET", "s3cret")
        path = tmp_path / "invoker.yaml"
        path.write_text(
            f"""
base_url: {BASE_URL}
credential:
  app_id: wx-app
  app_secret: ${{WX_APP_SECRET}}
  token_url: {BASE_URL}/cgi-bin/token
""",
            encoding="utf-8",
        )
        config = load_invoker_config(path)
        with ApiClient.from_config(config, transport=httpx.MockTransport(upstream)) as api:
            assert api.call(GET_USER_INFO, "o-1", "en") == {"openid": "o-1", "language": "en"}
        assert upstream.issued == 1
