"""Dry runs: per-node trace with side-effect free collaborators."""

from crm_automation.services.dry_run import DryRunExecutor
from tests.conftest import edge, node


async def test_trace_covers_each_executed_node(settings):
    definition = {
        "nodes": [
            node("t", "trigger", label="Start"),
            node("c", "condition", variable="lead.score", operator=">", value="50"),
            node("vip", "action", message="VIP {{lead.name}}"),
            node("std", "action", message="Standard"),
            node("hook", "http", url="https://crm.test/vip", method="POST", body={"lead": "{{lead.name}}"}),
        ],
        "edges": [
            edge("t", "c"),
            edge("c", "vip", label="True"),
            edge("c", "std", label="False"),
            edge("vip", "hook"),
        ],
    }

    result = await DryRunExecutor(settings).run(definition, {"lead": {"name": "Ana", "score": 90,
                                                                       "phone": "+5215550001"}})

    assert result["success"] is True
    assert result["status"] == "completed"
    assert [n["nodeId"] for n in result["nodes"]] == ["t", "c", "vip", "hook"]
    assert result["nodes"][0]["nodeLabel"] == "Start"
    assert result["nodes"][2]["nodeLabel"] == "action"
    assert all(n["status"] == "success" for n in result["nodes"])
    assert result["nodes"][1]["output"]["condition_result"] is True
    assert result["nodes"][3]["output"]["data"]["mock"] is True
    assert result["nodes"][3]["context"]["http_response"]["status"] == 200
    assert isinstance(result["totalDuration"], int)
    assert result["logs"][0] == "Starting workflow execution in test mode"


async def test_side_effect_nodes_use_fakes(settings):
    definition = {
        "nodes": [
            node("t", "trigger"),
            node("lead", "crm", action="create_lead", name="{{lead.name}}"),
            node("mail", "email", to="ana@example.com", subject="Hi", body="Hello"),
            node("ai", "ai_agent", userPrompt="Write a greeting"),
        ],
        "edges": [edge("t", "lead"), edge("lead", "mail"), edge("mail", "ai")],
    }

    result = await DryRunExecutor(settings).run(definition, {"lead": {"name": "Ana"}})

    assert result["success"] is True
    lead_output = result["nodes"][1]["output"]["lead"]
    assert lead_output["id"].startswith("test-lead-")
    assert result["nodes"][3]["output"]["output"] == "[dry run] Write a greeting"


async def test_failed_node_is_reported(settings):
    definition = {
        "nodes": [node("t", "trigger"), node("tag", "tag")],
        "edges": [edge("t", "tag")],
    }

    result = await DryRunExecutor(settings).run(definition, {"lead": {"id": "lead-1"}})

    assert result["success"] is False
    assert result["status"] == "failed"
    failed = result["nodes"][-1]
    assert failed["status"] == "error"
    assert failed["error"] == "Tag is required"
    assert failed["logs"] == ["Error: Tag is required"]
    assert "tag: Tag is required" in result["error"]


async def test_suspending_node_ends_its_branch(settings):
    definition = {
        "nodes": [
            node("t", "trigger"),
            node("wait", "wait_input", conversationId="test-conversation"),
            node("after", "action", message="never"),
        ],
        "edges": [edge("t", "wait"), edge("wait", "after")],
    }

    result = await DryRunExecutor(settings).run(definition, {})

    assert result["success"] is True
    assert result["status"] == "waiting"
    assert [n["nodeId"] for n in result["nodes"]] == ["t", "wait"]
    assert result["nodes"][1]["status"] == "suspended"


async def test_invalid_definition(settings):
    result = await DryRunExecutor(settings).run({"nodes": [], "edges": []})

    assert result["success"] is False
    assert result["nodes"] == []
    assert "No trigger node" in result["error"]
