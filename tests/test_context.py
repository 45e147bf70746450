"""Variable context: nested lookup, interpolation, snapshots and forks."""

from crm_automation.services.context import ENGINE_STATE_KEY, ExecutionContext, get_nested_value


def test_nested_lookup_walks_dicts_and_lists():
    data = {"lead": {"name": "Ana"}, "items": [{"sku": "x"}]}
    assert get_nested_value(data, "lead.name") == "Ana"
    assert get_nested_value(data, "items.0.sku") == "x"
    assert get_nested_value(data, "items.3.sku") is None
    assert get_nested_value(data, "lead.name.first") is None


def test_resolve_replaces_templates(context):
    assert context.resolve("Hola {{lead.name}}, score {{ lead.score }}") == "Hola Ana, score 75"


def test_resolve_missing_path_is_empty_string(context):
    assert context.resolve("{{missing.path}}") == ""
    assert context.resolve("x{{missing}}y") == "xy"


def test_resolve_without_tokens_is_idempotent(context):
    text = "plain text, no variables"
    assert context.resolve(text) == text
    assert context.resolve(context.resolve(text)) == text


def test_resolve_renders_booleans_and_none():
    ctx = ExecutionContext(data={"flag": True, "off": False, "nothing": None})
    assert ctx.resolve("{{flag}}/{{off}}/{{nothing}}") == "true/false/"


def test_resolve_params_recurses():
    ctx = ExecutionContext(data={"lead": {"email": "a@b.co"}})
    params = {"to": "{{lead.email}}", "list": ["{{lead.email}}", 3], "nested": {"x": "{{lead.email}}"}}
    assert ctx.resolve_params(params) == {
        "to": "a@b.co", "list": ["a@b.co", 3], "nested": {"x": "a@b.co"},
    }


def test_set_creates_intermediate_mappings():
    ctx = ExecutionContext()
    ctx.set("lead.address.city", "CDMX")
    assert ctx.get("lead.address.city") == "CDMX"
    assert "lead.address" in ctx
    assert ctx.get("lead.missing", "fallback") == "fallback"


def test_to_dict_round_trip_keeps_signals():
    ctx = ExecutionContext(data={"a": 1})
    ctx.signals.mark_resume("n1", {"user_input": "hi"})
    state = ctx.to_dict()
    assert state[ENGINE_STATE_KEY]["resumed_node_id"] == "n1"

    restored = ExecutionContext.from_dict(state)
    assert restored.data == {"a": 1}
    assert restored.signals.consume_resume("n1") == {"user_input": "hi"}
    assert restored.signals.consume_resume("n1") is None


def test_consume_resume_ignores_other_nodes():
    ctx = ExecutionContext()
    ctx.signals.mark_resume("n1")
    assert ctx.signals.consume_resume("n2") is None
    assert ctx.signals.consume_resume("n1") == {}


def test_snapshot_hides_internal_keys():
    ctx = ExecutionContext(data={"visible": 1, "_internal": 2})
    assert ctx.snapshot() == {"visible": 1}


def test_fork_isolates_and_merge_publishes():
    parent = ExecutionContext(data={"lead": {"name": "Ana"}, "shared": 0})
    branch = parent.fork()
    branch.set("lead.name", "Bea")
    branch.set("shared", 1)

    assert parent.get("lead.name") == "Ana"
    parent.merge(branch)
    assert parent.get("lead.name") == "Bea"
    assert parent.get("shared") == 1


def test_merge_only_publishes_keys_the_branch_changed():
    parent = ExecutionContext(data={"lead": {"id": "L1", "status": "new"}})
    first, second = parent.fork(), parent.fork()

    first.set("lead.status", "vip")
    parent.merge(first)
    second.set("note", "seen")
    parent.merge(second)

    assert parent.get("lead.status") == "vip"
    assert parent.get("note") == "seen"
    assert second.changed_keys() == ["note"]
