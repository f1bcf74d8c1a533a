"""
Tests for the open pixel and click redirect endpoints.
"""
import re
from urllib.parse import unquote

import pytest
from fastapi.testclient import TestClient
from itsdangerous import URLSafeTimedSerializer

from outreach_flow.api.monitoring import get_engine
from outreach_flow.api.tracking import TRACKING_PIXEL
from outreach_flow.config import Settings, get_settings
from outreach_flow.main import app
from outreach_flow.models.execution import DispatchRecord
from outreach_flow.services.providers import MessageContent, SmtpEmailProvider
from outreach_flow.wiring import Engine

SECRET = "tracking-test-secret"


@pytest.fixture
def engine(repository, guard, executor, recovery):
    return Engine(repository=repository, guard=guard, executor=executor, recovery=recovery)


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_settings] = lambda: Settings(TRACKING_SECRET_KEY=SECRET)
    yield TestClient(app, follow_redirects=False)
    app.dependency_overrides.clear()


@pytest.fixture
def dispatch(repository):
    record = DispatchRecord(
        dispatch_id="disp_1",
        execution_id="exec-1",
        record_id="rec-1",
        node_id="stage-1",
        contact_id="c1",
        recipient="c1@example.com",
        state="sent",
        provider_message_id=1001,
    )
    repository.dispatches[record.dispatch_id] = record
    return record


def _tokens(dispatch_id="disp_1", secret=SECRET):
    provider = SmtpEmailProvider(
        host="smtp.example.com",
        port=587,
        username="sender@example.com",
        password="app-password",
        sender_name="Outreach",
        tracking_secret=secret,
        public_url="https://api.example.com",
    )
    return provider.tracking_tokens({"dispatch_id": dispatch_id, "execution_id": "exec-1"})


class TestOpenPixel:
    def test_counts_view(self, client, repository, dispatch):
        response = client.get("/api/track/open", params={"token": _tokens()["open"]})

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert response.headers["content-type"] == "image/gif"
        assert response.headers["cache-control"].startswith("no-cache")
        assert repository.dispatches["disp_1"].views == 1

        client.get("/api/track/open", params={"token": _tokens()["open"]})
        assert repository.dispatches["disp_1"].views == 2
        assert repository.dispatches["disp_1"].clicks == 0

    def test_forged_token_still_returns_pixel(self, client, repository, dispatch):
        forged = _tokens(secret="someone-else")["open"]
        response = client.get("/api/track/open", params={"token": forged})

        assert response.status_code == 200
        assert response.content == TRACKING_PIXEL
        assert repository.dispatches["disp_1"].views == 0

    def test_click_token_does_not_count_as_open(self, client, repository, dispatch):
        client.get("/api/track/open", params={"token": _tokens()["click"]})
        assert repository.dispatches["disp_1"].views == 0

    def test_unknown_dispatch(self, client, repository):
        response = client.get("/api/track/open", params={"token": _tokens("disp_missing")["open"]})
        assert response.status_code == 200
        assert repository.dispatches == {}


class TestClickRedirect:
    def test_counts_click_and_redirects(self, client, repository, dispatch):
        response = client.get(
            "/api/track/click", params={"token": _tokens()["click"], "url": "https://example.com/post"}
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/post"
        assert repository.dispatches["disp_1"].clicks == 1
        assert repository.dispatches["disp_1"].views == 0

    def test_bad_token_still_redirects(self, client, repository, dispatch):
        response = client.get("/api/track/click", params={"token": "garbage", "url": "https://example.com/post"})

        assert response.status_code == 302
        assert repository.dispatches["disp_1"].clicks == 0

    def test_rejects_non_http_target(self, client, repository, dispatch):
        response = client.get(
            "/api/track/click", params={"token": _tokens()["click"], "url": "javascript:alert(1)"}
        )

        assert response.status_code == 400
        assert repository.dispatches["disp_1"].clicks == 0


class TestEmailLinksReachEndpoints:
    def test_rendered_links_are_served(self, client, repository, dispatch):
        provider = SmtpEmailProvider(
            host="smtp.example.com",
            port=587,
            username="sender@example.com",
            password="app-password",
            sender_name="Outreach",
            tracking_secret=SECRET,
            public_url="https://api.example.com",
        )
        tokens = provider.tracking_tokens({"dispatch_id": "disp_1", "execution_id": "exec-1"})
        html = provider.render_html(
            MessageContent(body='Read <a href="https://example.com/post">this</a>', subject="News"), tokens
        )

        click_url = re.search(r'href="https://api\.example\.com(/api/track/click\?[^"]+)"', html).group(1)
        pixel_url = re.search(r'src="https://api\.example\.com(/api/track/open\?[^"]+)"', html).group(1)

        assert client.get(pixel_url).status_code == 200
        response = client.get(click_url)
        assert response.status_code == 302
        assert unquote(response.headers["location"]) == "https://example.com/post"

        stored = repository.dispatches["disp_1"]
        assert stored.views == 1
        assert stored.clicks == 1


class TestTrackedEngagementDrivesConditions:
    @pytest.mark.asyncio
    async def test_click_sends_contact_down_yes_branch(self, client, repository, executor, queue, clock, seed):
        graph = {
            "stages": [
                {"id": "stage-1", "type": "stage", "waitDays": 0, "messageType": "email", "inlineContent": "Hi"},
                {"id": "stage-2", "type": "stage", "waitDays": 1, "messageType": "email", "inlineContent": "Again"},
            ],
            "conditions": [
                {"id": "conditional-1", "type": "condition", "checkParam": "Clicks", "checkOperator": ">", "checkValue": "0", "evaluationDelay": 24},
            ],
            "branches": [
                {"source_node_id": "stage-1", "target_node_id": "conditional-1"},
                {"source_node_id": "conditional-1", "target_node_id": "stage-2", "source_handle": "yes"},
            ],
        }
        await seed(graph, contact_ids=("c1", "c2"))
        await executor.run_sweep()

        clicked = next(d for d in repository.dispatches.values() if d.contact_id == "c2")
        token = _tokens(clicked.dispatch_id)["click"]
        client.get("/api/track/click", params={"token": token, "url": "https://example.com"})

        clock.advance(hours=24)
        await executor.run_sweep()
        assert await executor.verify_condition(queue.condition_checks[0][0]) is True

        stage_2 = await repository.get_node_record("exec-1", "stage-2")
        assert stage_2.contact_ids == ["c2"]
