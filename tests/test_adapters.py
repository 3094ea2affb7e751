import json
import pytest
from rcep.adapters import (
    NetworkEvent, count_message_nodes, extract_embedded_state, extract_from_event, parse_body, parse_page,
    should_capture_url,
)
from rcep.adapters.content import TRUNCATION_MARKER, cap_body, cap_message, normalize_content, normalize_role
from rcep.adapters.network import parse_batchexecute, walk_conversation_graph
from rcep.adapters.page import is_ui_noise


def _node(role, text, parent, create_time=None, **extra):
    msg = {"author": {"role": role}, "content": {"content_type": "text", "parts": [text]}}
    if create_time is not None:
        msg["create_time"] = create_time
    msg.update(extra)
    return {"message": msg, "parent": parent}


@pytest.fixture
def graph():
    return {
        "current_node": "a2",
        "mapping": {
            "root": {"message": None, "parent": None},
            "sys": _node("system", "You are helpful", "root"),
            "u1": _node("user", "First question", "sys", create_time=1700000000),
            "a1": _node("assistant", "First answer", "u1"),
            "u2a": _node("user", "Abandoned branch", "a1"),
            "u2b": _node("user", "Edited question", "a1"),
            "a2": _node("assistant", "Final answer", "u2b"),
        },
    }


# ---------------------------------------------------------------------------
# Content normalization
# ---------------------------------------------------------------------------
def test_normalize_content_shapes():
    assert normalize_content("plain") == "plain"
    assert normalize_content(["a", {"text": "b"}, {"type": "text", "text": "c"}, {"content": "d"}]) == "a\nb\nc\nd"
    assert normalize_content({"parts": ["x", "y"]}) == "x\ny"
    assert normalize_content({"content": {"parts": ["nested"]}}) == "nested"
    assert normalize_content({"text": "t"}) == "t"
    assert normalize_content({"unknown": 1}) == ""
    assert normalize_content(None) == ""


def test_normalize_role():
    assert normalize_role("Human") == "user"
    assert normalize_role(None, "claude") == "assistant"
    assert normalize_role("AI") == "assistant"
    assert normalize_role("system") is None


def test_caps_add_markers():
    assert cap_message("abcdef", limit=3) == "abc" + TRUNCATION_MARKER
    assert cap_message("abc", limit=3) == "abc"
    assert cap_body("abcdef", limit=2) == "ab\n[RL4_TRUNCATED]"


# ---------------------------------------------------------------------------
# Network adapter
# ---------------------------------------------------------------------------
def test_graph_follows_current_branch_only(graph):
    schema, cands = parse_body(json.dumps(graph), "https://chatgpt.com/backend-api/conversation/x")
    assert schema == "conversation_graph"
    assert [c.content for c in cands] == ["First question", "First answer", "Edited question", "Final answer"]
    assert [c.role for c in cands] == ["user", "assistant", "user", "assistant"]
    assert cands[0].timestamp == "2023-11-14T22:13:20.000Z"


def test_graph_skips_hidden_and_context_messages(graph):
    graph["mapping"]["a1"]["message"]["metadata"] = {"is_visually_hidden_from_conversation": True}
    graph["mapping"]["u1"]["message"]["content"]["content_type"] = "user_editable_context"
    cands = walk_conversation_graph(graph)
    assert [c.content for c in cands] == ["Edited question", "Final answer"]


def test_graph_without_current_node_takes_all(graph):
    del graph["current_node"]
    cands = walk_conversation_graph(graph)
    assert "Abandoned branch" in [c.content for c in cands]


def test_graph_parent_cycle_terminates():
    looped = {
        "current_node": "a1",
        "mapping": {
            "u1": _node("user", "Loop question", "a1"),
            "a1": _node("assistant", "Loop answer", "u1"),
        },
    }
    cands = walk_conversation_graph(looped)
    assert [c.content for c in cands] == ["Loop question", "Loop answer"]


def test_graph_walk_is_bounded(monkeypatch):
    monkeypatch.setattr("rcep.adapters.network.MAX_GRAPH_HOPS", 3)
    mapping = {"n0": _node("user", "turn 0", None)}
    for i in range(1, 6):
        mapping[f"n{i}"] = _node("assistant" if i % 2 else "user", f"turn {i}", f"n{i - 1}")
    cands = walk_conversation_graph({"current_node": "n5", "mapping": mapping})
    assert [c.content for c in cands] == ["turn 3", "turn 4", "turn 5"]


def test_claude_conversation_schema():
    body = json.dumps({
        "uuid": "c0ffee",
        "chat_messages": [
            {"sender": "human", "text": "Hi Claude", "created_at": "2024-01-01T00:00:00Z"},
            {"sender": "assistant", "content": [{"type": "text", "text": "Hello!"}]},
        ],
    })
    schema, cands = parse_body(body, "https://claude.ai/api/organizations/o/chat_conversations/c0ffee")
    assert schema == "claude_conversation"
    assert [(c.role, c.content) for c in cands] == [("user", "Hi Claude"), ("assistant", "Hello!")]
    assert cands[0].timestamp == "2024-01-01T00:00:00Z"


def test_generic_walker_fallback():
    body = json.dumps({"data": {"thread": {"items": [
        {"role": "user", "content": "Deep question"},
        {"role": "assistant", "text": "Deep answer"},
    ]}}})
    schema, cands = parse_body(body)
    assert schema == "generic"
    assert [c.content for c in cands] == ["Deep question", "Deep answer"]


def test_ndjson_stream_frames():
    frame = {"message": {"author": {"role": "assistant"}, "content": {"content_type": "text", "parts": ["Streaming hello"]}}}
    body = json.dumps(frame) + "\n" + json.dumps({"type": "ping"})
    schema, cands = parse_body(body)
    assert [(c.role, c.content) for c in cands] == [("assistant", "Streaming hello")]


def test_batchexecute_frames_expand_nested_json():
    inner = json.dumps({"messages": [{"role": "user", "content": "From gemini"}]})
    body = ")]}'\n\n123\n" + json.dumps(["wrb.fr", "rpc", inner])
    frames = parse_batchexecute(body)
    assert any(isinstance(f, dict) and "messages" in f for f in frames)
    _, cands = parse_body(body, "https://gemini.google.com/_/BardChatUi/data/batchexecute")
    assert [c.content for c in cands] == ["From gemini"]


def test_unparseable_body_never_raises():
    assert parse_body("<html>nope</html>") == ("unparsed", [])
    assert parse_body("") == ("empty", [])


def test_conversation_chunk_event():
    event = NetworkEvent.from_payload({
        "kind": "chatgpt_conversation_chunk",
        "chunkIndex": 0,
        "totalChunks": 2,
        "totalMessages": 3,
        "messages": [
            {"role": "user", "content": "hi", "timestamp": 1700000000},
            {"role": "tool", "content": "ignored"},
        ],
    })
    assert event.is_conversation_chunk
    assert event.total_messages == 3
    cands = extract_from_event(event)
    assert [(c.role, c.content) for c in cands] == [("user", "hi")]
    assert cands[0].timestamp == "2023-11-14T22:13:20.000Z"


def test_event_without_body_yields_nothing():
    assert extract_from_event(NetworkEvent.from_payload({"url": "https://claude.ai/api/x"})) == []


@pytest.mark.parametrize("url,origin,expected", [
    ("https://chatgpt.com/backend-api/conversation/abc", "https://chatgpt.com", True),
    ("https://evil.example/api/conversation", "https://chatgpt.com", False),
    ("https://ab.api.openai.com/backend-api/x", "https://chatgpt.com", True),
    ("https://chatgpt.com/static/app.js", "https://chatgpt.com", False),
    ("/api/organizations/o/chat_conversations/c", None, True),
    ("", None, False),
])
def test_should_capture_url(url, origin, expected):
    assert should_capture_url(url, origin) is expected


# ---------------------------------------------------------------------------
# Embedded-state adapter
# ---------------------------------------------------------------------------
def test_embedded_next_data():
    state = {
        "props": {"pageProps": {"messages": [
            {"role": "user", "content": "Embedded question"},
            {"role": "assistant", "content": "Embedded answer"},
        ]}},
        "padding": "x" * 1200,
    }
    html = f'<html><body><script id="__NEXT_DATA__" type="application/json">{json.dumps(state)}</script></body></html>'
    cands = extract_embedded_state(html)
    assert [c.content for c in cands] == ["Embedded question", "Embedded answer"]


def test_embedded_ignores_small_scripts():
    html = '<script id="__NEXT_DATA__" type="application/json">{"messages": [{"role": "user", "content": "x"}]}</script>'
    assert extract_embedded_state(html) == []


# ---------------------------------------------------------------------------
# Page-content adapter
# ---------------------------------------------------------------------------
CHATGPT_HTML = """
<main>
  <div data-message-author-role="user"><div>Hello there</div></div>
  <div data-message-author-role="assistant"><div>General Kenobi</div></div>
</main>
"""

CLAUDE_HTML = """
<div data-testid="user-message" class="font-user-message">What is a context package?</div>
<div class="font-claude-message">A compact, sealed summary of a conversation.</div>
"""

GEMINI_HTML = """
<user-query><div class="query-text">How do I deploy the service?</div></user-query>
<model-response>
  <div class="markdown">
    <div class="thought-disclosure">Show thinking</div>
    <p>Use a blue-green deployment.</p>
    <button>Copy</button>
  </div>
</model-response>
<model-response><div class="markdown"><button>Share</button></div></model-response>
"""


def test_parse_page_chatgpt():
    cands = parse_page(CHATGPT_HTML, "chatgpt")
    assert [(c.role, c.content) for c in cands] == [("user", "Hello there"), ("assistant", "General Kenobi")]
    assert count_message_nodes(CHATGPT_HTML, "chatgpt") == 2


def test_parse_page_claude_roles_from_classes():
    cands = parse_page(CLAUDE_HTML, "claude")
    assert [c.role for c in cands] == ["user", "assistant"]
    assert cands[1].content == "A compact, sealed summary of a conversation."


def test_parse_page_gemini_strips_thoughts_and_buttons():
    cands = parse_page(GEMINI_HTML, "gemini")
    assert [(c.role, c.content) for c in cands] == [
        ("user", "How do I deploy the service?"),
        ("assistant", "Use a blue-green deployment."),
    ]


def test_claude_streaming_fallback_infers_roles():
    html = '<div data-is-streaming="false">Question one</div><div data-is-complete="true">Answer one</div>'
    cands = parse_page(html, "claude")
    assert [c.role for c in cands] == ["user", "assistant"]


@pytest.mark.parametrize("text,expected", [
    ("Copy", True),
    ("Show thinking", True),
    ("...", True),
    ("Thinking about the deployment plan", True),
    ("Use a blue-green deployment for the API.", False),
])
def test_ui_noise(text, expected):
    assert is_ui_noise(None, text) is expected
