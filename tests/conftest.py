"""Shared fixtures: in-memory database, fake collaborators, wired services."""

from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from crm_automation.core.config import Settings
from crm_automation.core.database import Database
from crm_automation.models.database import Workflow
from crm_automation.services.context import ExecutionContext
from crm_automation.services.dispatcher import InboundDispatcher
from crm_automation.services.node_executor import NodeExecutor
from crm_automation.services.pending_inputs import PendingInputService
from crm_automation.services.runner import ExecutionRunner
from crm_automation.services.trigger_matcher import TriggerMatcher

ORG_ID = "org-1"


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeOutbound:
    """Records every send; fails when fail_with is set."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None

    async def send(self, connection_id, recipient, content, organization_id):
        if self.fail_with:
            return {"success": False, "error": self.fail_with}
        self.sent.append({
            "connection_id": connection_id,
            "recipient": recipient,
            "content": content,
            "organization_id": organization_id,
        })
        return {"success": True, "externalId": f"msg-{len(self.sent)}"}

    @property
    def texts(self) -> List[str]:
        return [m["content"].get("text") for m in self.sent]


class FakeAI:
    def __init__(self, output: str = "AI answer"):
        self.output = output
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, organization_id, task_type, payload):
        self.calls.append({"organization_id": organization_id, "task_type": task_type, "payload": payload})
        return {"success": True, "data": {"output": self.output}}


class FakeCRM:
    def __init__(self):
        self.calls: List[tuple] = []
        self.conversation_count = 0
        self.fail = False

    def _result(self, name, *args, data=None):
        self.calls.append((name,) + args)
        if self.fail:
            return {"success": False, "error": f"{name} rejected"}
        return {"success": True, "data": data or {}}

    async def create_lead(self, organization_id, data):
        return self._result("create_lead", data, data={"id": "lead-new", **data})

    async def update_lead_status(self, organization_id, lead_id, status):
        return self._result("update_lead_status", lead_id, status)

    async def add_tag(self, organization_id, lead_id, tag):
        return self._result("add_tag", lead_id, tag)

    async def remove_tag(self, organization_id, lead_id, tag):
        return self._result("remove_tag", lead_id, tag)

    async def create_invoice(self, organization_id, data):
        return self._result("create_invoice", data, data={"id": "inv-1"})

    async def create_quote(self, organization_id, data):
        return self._result("create_quote", data, data={"id": "quote-1"})

    async def create_notification(self, organization_id, data):
        return self._result("create_notification", data, data={"id": "notif-1"})

    async def count_lead_conversations(self, organization_id, lead_id, exclude_conversation_id=None):
        self.calls.append(("count_lead_conversations", lead_id, exclude_conversation_id))
        return self.conversation_count


class RecordingTransport:
    """httpx.MockTransport handler that replays queued responses."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            item = self.responses.pop(0)
        else:
            item = httpx.Response(200, json={"ok": True, "id": "resp-1"})
        if isinstance(item, Exception):
            raise item
        return item


async def no_sleep(seconds: float) -> None:
    no_sleep.calls.append(seconds)


no_sleep.calls = []


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        scheduler_enabled=False,
        log_format="console",
        email_api_url="https://mail.test/send",
        sms_api_url="https://sms.test/send",
    )


@pytest.fixture
def outbound() -> FakeOutbound:
    return FakeOutbound()


@pytest.fixture
def ai_backend() -> FakeAI:
    return FakeAI()


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def http_client(transport):
    async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as client:
        yield client


@pytest.fixture
def node_executor(settings, outbound, ai_backend, crm, http_client) -> NodeExecutor:
    no_sleep.calls.clear()
    return NodeExecutor(settings, outbound=outbound, ai_backend=ai_backend, crm=crm,
                        http_client=http_client, backoff_sleep=no_sleep)


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def pending_inputs(database) -> PendingInputService:
    return PendingInputService(database)


@pytest.fixture
def runner(database, node_executor, pending_inputs, settings) -> ExecutionRunner:
    return ExecutionRunner(database, node_executor, pending_inputs, settings)


@pytest.fixture
def trigger_matcher(database, crm, runner, settings) -> TriggerMatcher:
    return TriggerMatcher(database, crm, runner, settings)


@pytest.fixture
def dispatcher(pending_inputs, runner, trigger_matcher) -> InboundDispatcher:
    return InboundDispatcher(pending_inputs, runner, trigger_matcher)


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(data={
        "organization_id": ORG_ID,
        "execution_id": "exec-1",
        "lead": {"id": "lead-1", "name": "Ana", "phone": "+5215550001", "score": 75},
        "message": {"content": "hola", "sender": "+5215550001", "type": "text",
                    "conversationId": "conv-1"},
        "conversation": {"id": "conv-1", "channel": "whatsapp"},
    })


# ============================================================================
# Builders
# ============================================================================

def node(node_id: str, node_type: str, **data) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str, edge_id: Optional[str] = None, handle: Optional[str] = None,
         label: Optional[str] = None) -> Dict[str, Any]:
    e = {"id": edge_id or f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        e["sourceHandle"] = handle
    if label is not None:
        e["label"] = label
    return e


def make_workflow(definition: Dict[str, Any], trigger_type: str = "message_received",
                  trigger_config: Optional[Dict[str, Any]] = None, **kwargs) -> Workflow:
    return Workflow(
        organization_id=kwargs.pop("organization_id", ORG_ID),
        name=kwargs.pop("name", "Test workflow"),
        trigger_type=trigger_type,
        trigger_config=trigger_config or {},
        definition=definition,
        **kwargs,
    )
