"""
End-to-end tests: CodexBridge driving the scripted fake MCP server.

Each test spawns tests/fixtures/fake_codex.py, runs the initialize
handshake, and talks to it through the bridge exactly as the daemon does.
"""
import asyncio

import pytest
import pytest_asyncio

from botify.bridge import CodexBridge
from botify.dispatcher import TIMEOUT_GUIDANCE
from botify.errors import BackendError, BridgeError, UnexpectedExit
from botify.supervisor import SupervisorState

OWNER = "owner"
CHAT = "100"


@pytest_asyncio.fixture
async def live_bridge(bridge_config, sink, fake_codex):
    """live_bridge(*flags, **config) -> (bridge, fatal_errors)"""
    bridges = []

    def _make(*flags, **overrides):
        overrides.setdefault("owner_chat_id", OWNER)
        bridge = CodexBridge(bridge_config(command=fake_codex(*flags), **overrides), sink)
        fatal = []
        bridge.on_fatal(fatal.append)
        bridges.append(bridge)
        return bridge, fatal

    yield _make
    for bridge in bridges:
        await bridge.stop()


@pytest.mark.asyncio
class TestHappyPath:
    async def test_start_announces_to_owner(self, live_bridge, sink, until):
        bridge, fatal = live_bridge()
        await bridge.start()
        assert bridge.ready
        assert [t.get("name") for t in bridge.tools] == ["codex", "codex-reply"]
        await until(lambda: sink.texts(OWNER))
        assert sink.texts(OWNER) == [f"Botify {bridge.version} is online and ready."]
        assert fatal == []

    async def test_conversation_round_trip(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()

        await bridge.enqueue(CHAT, "hello")
        await until(lambda: len(sink.texts(CHAT)) == 1, timeout=5.0)
        assert sink.texts(CHAT) == ["echo: hello"]
        snapshot = bridge.status_snapshot(CHAT)
        assert snapshot.conversation_id == "conv-1"
        assert snapshot.last_rollout == "/tmp/rollouts/conv-1.jsonl"

        # The follow-up continues conv-1 instead of starting conv-2
        await bridge.enqueue(CHAT, "again")
        await until(lambda: len(sink.texts(CHAT)) == 2, timeout=5.0)
        assert sink.texts(CHAT)[1] == "echo: again"
        assert bridge.status_snapshot(CHAT).conversation_id == "conv-1"

    async def test_prompts_queue_in_order(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()
        for text in ("one", "two", "three"):
            await bridge.enqueue(CHAT, text)
        await until(lambda: len(sink.texts(CHAT)) == 3, timeout=5.0)
        assert sink.texts(CHAT) == ["echo: one", "echo: two", "echo: three"]

    async def test_prompt_before_start_runs_once_ready(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.enqueue(CHAT, "early bird")
        assert bridge.status_snapshot(CHAT).queue_depth == 1
        await bridge.start()
        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == ["echo: early bird"]

    async def test_requested_stop_is_not_fatal(self, live_bridge, sink, until):
        bridge, fatal = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "hello")
        await until(lambda: sink.texts(CHAT), timeout=5.0)

        await bridge.stop()
        assert fatal == []
        assert not bridge.ready
        assert bridge.supervisor.state == SupervisorState.STOPPED
        assert bridge.status_snapshot(CHAT).conversation_id == "none"


@pytest.mark.asyncio
class TestBackendTraffic:
    async def test_notification_binds_conversation(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "notify")
        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == ["echo: notify"]
        assert bridge.status_snapshot(CHAT).conversation_id == "conv-1"

    async def test_approval_request_is_refused_and_reported(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "approval")
        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == ["echo: approval"]
        await until(lambda: any("elicitation/create" in t for t in sink.texts(OWNER)))

    async def test_garbage_line_is_tolerated(self, live_bridge, sink, until):
        bridge, fatal = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "garbage")
        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == ["echo: garbage"]
        assert "this is not json" in bridge.transport.tail.render()
        assert bridge.ready and fatal == []

    async def test_rpc_error_clears_binding(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "hello")
        await bridge.enqueue(CHAT, "error")
        await until(lambda: len(sink.texts(CHAT)) == 2, timeout=5.0)
        assert sink.texts(CHAT)[1] == "Codex error: tool exploded"
        assert bridge.status_snapshot(CHAT).conversation_id == "none"

    async def test_missing_conversation_id_warns_chat(self, live_bridge, sink, until):
        bridge, _ = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "noid")
        await until(lambda: len(sink.texts(CHAT)) == 2, timeout=5.0)
        assert sink.texts(CHAT)[0] == "no id for you"
        assert "did not return a conversation id" in sink.texts(CHAT)[1]


@pytest.mark.asyncio
class TestTimeouts:
    async def test_slow_prompt_gets_timeout_guidance(self, live_bridge, sink, until):
        bridge, fatal = live_bridge()
        await bridge.start()
        bridge.transport.default_timeout = 0.05

        await bridge.enqueue(CHAT, "sleep:0.5")
        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == [TIMEOUT_GUIDANCE]

        # The late answer is ignored and the backend stays up
        await asyncio.sleep(0.7)
        assert bridge.transport.pending_count == 0
        assert bridge.ready and fatal == []

        bridge.transport.default_timeout = None
        await bridge.enqueue(CHAT, "still there?")
        await until(lambda: len(sink.texts(CHAT)) == 2, timeout=5.0)
        assert sink.texts(CHAT)[1] == "echo: still there?"


@pytest.mark.asyncio
class TestFailures:
    async def test_exit_mid_call(self, live_bridge, sink, until):
        bridge, fatal = live_bridge()
        await bridge.start()
        await bridge.enqueue(CHAT, "exit:2")

        await until(lambda: sink.texts(CHAT), timeout=5.0)
        assert sink.texts(CHAT) == ["Codex error: Codex process exited before answering tools/call."]
        await until(lambda: any("exit code 2" in t for t in sink.texts(OWNER)))

        assert len(fatal) == 1
        assert isinstance(fatal[0], UnexpectedExit)
        assert fatal[0].code == 2
        assert "exiting on request (exit:2)" in fatal[0].tail
        assert not bridge.ready

    async def test_exit_on_start_fires_fatal_once(self, live_bridge, sink, until):
        bridge, fatal = live_bridge("--exit-on-start", "1")
        with pytest.raises(BridgeError):
            await asyncio.wait_for(bridge.start(), timeout=5.0)

        assert len(fatal) == 1
        assert isinstance(fatal[0], UnexpectedExit)
        assert fatal[0].code == 1
        assert not bridge.ready

        await bridge.stop()
        await bridge.stop()
        assert len(fatal) == 1

    async def test_initialize_error(self, live_bridge, sink, until):
        bridge, fatal = live_bridge("--fail-initialize")
        with pytest.raises(BackendError, match="init refused"):
            await bridge.start()

        assert not bridge.ready
        assert len(fatal) == 1
        await until(lambda: "Codex initialization failed:\ninit refused" in sink.texts(OWNER))

    async def test_launch_failure_notifies_owner(self, live_bridge, sink, until, tmp_path):
        bridge, fatal = live_bridge(cwd=str(tmp_path / "missing"))
        with pytest.raises(BridgeError):
            await bridge.start()
        assert len(fatal) == 1
        await until(lambda: any("failed to launch" in t for t in sink.texts(OWNER)))
