"""
End-to-end tests for FlowEngine.process_message against the in-memory
store and the console channel.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.http_client import ExternalCallError, HttpResponse
from config.settings import EngineConfig, Settings
from core.engine import ContactLocks, FlowEngine
from flows.graph import ERROR_HANDLE, SUCCESS_HANDLE
from tests.helpers import CONTACT, USER, edge, make_flow, node, texts


def menu_flow():
    return make_flow([
        node("hello", "textMessage", text="Welcome!"),
        node("menu", "buttonMessage", text="Continue?",
             buttons=[{"id": "1", "text": "Yes"}, {"id": "2", "text": "No"}]),
        node("nodeA", "waitInput", message="Your email?", variableName="email"),
        node("nodeB", "textMessage", text="Bye"),
        node("thanks", "textMessage", text="Thanks, we will write to {{email}}"),
    ], [
        edge("hello", "menu"),
        edge("menu", "nodeA", "1"),
        edge("menu", "nodeB", "2"),
        edge("nodeA", "thanks"),
    ])


async def current_node(store, contact=CONTACT):
    s = await store.get_session(USER, contact)
    return s.current_node_id if s else None


# ──────────────────────────────────────────────────────────────
#  Starting a conversation
# ──────────────────────────────────────────────────────────────

class TestStart:
    @pytest.mark.asyncio
    async def test_trigger_runs_entry_and_parks_on_waiting_node(self, engine, store, console):
        await store.save_flow(menu_flow())
        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["Welcome!", "Continue?"]
        assert await current_node(store) == "menu"

    @pytest.mark.asyncio
    async def test_waiting_entry_node_is_current_node(self, engine, store, console):
        await store.save_flow(make_flow([node("ask", "waitInput", message="Name?", variableName="n")], []))
        await engine.process_message(USER, CONTACT, "start")
        assert await current_node(store) == "ask"
        assert texts(console) == ["Name?"]

    @pytest.mark.asyncio
    async def test_no_trigger_match_is_dropped(self, engine, store, console):
        await store.save_flow(menu_flow())
        await engine.process_message(USER, CONTACT, "random chatter")
        assert await store.get_session(USER, CONTACT) is None
        assert console.sent == []

    @pytest.mark.asyncio
    async def test_trigger_text_is_not_treated_as_reply(self, engine, store, console):
        flow = make_flow([
            node("m", "buttonMessage", text="Pick", buttons=[{"id": "1", "text": "start"}]),
            node("x", "textMessage", text="picked"),
        ], [edge("m", "x", "1")])
        await store.save_flow(flow)
        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["Pick"]
        assert await current_node(store) == "m"

    @pytest.mark.asyncio
    async def test_flow_without_unique_entry_starts_nothing(self, engine, store, console):
        await store.save_flow(make_flow([node("a", "textMessage"), node("b", "textMessage")], []))
        await engine.process_message(USER, CONTACT, "start")
        assert await store.get_session(USER, CONTACT) is None
        assert console.sent == []

    @pytest.mark.asyncio
    async def test_all_action_flow_runs_and_ends(self, engine, store, console):
        await store.save_flow(make_flow(
            [node("a", "textMessage", text="one"), node("b", "textMessage", text="two")],
            [edge("a", "b")],
        ))
        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["one", "two"]
        assert await store.get_session(USER, CONTACT) is None


# ──────────────────────────────────────────────────────────────
#  Resuming
# ──────────────────────────────────────────────────────────────

class TestResume:
    @pytest.mark.asyncio
    async def test_button_match_moves_to_target(self, engine, store):
        await store.save_flow(menu_flow())
        await engine.process_message(USER, CONTACT, "start")
        await engine.process_message(USER, CONTACT, "Yes")
        assert await current_node(store) == "nodeA"

    @pytest.mark.asyncio
    async def test_button_no_match_leaves_session_unchanged(self, engine, store, console):
        await store.save_flow(menu_flow())
        await engine.process_message(USER, CONTACT, "start")
        before = await store.get_session(USER, CONTACT)

        await engine.process_message(USER, CONTACT, "Maybe")

        after = await store.get_session(USER, CONTACT)
        assert after.current_node_id == "menu"
        assert after.variables == before.variables
        assert after.updated_at == before.updated_at
        assert texts(console)[-1] == "Continue?"

    @pytest.mark.asyncio
    async def test_wait_input_stores_variable_and_advances(self, engine, store, console):
        flow = make_flow([
            node("ask", "waitInput", message="Email?", variableName="email"),
            node("confirm", "buttonMessage", text="Is {{email}} right?", buttons=[{"id": "y", "text": "Yes"}]),
        ], [edge("ask", "confirm")])
        await store.save_flow(flow)
        await engine.process_message(USER, CONTACT, "start")
        await engine.process_message(USER, CONTACT, "a@b.com")

        session = await store.get_session(USER, CONTACT)
        assert session.variables == {"email": "a@b.com"}
        assert session.current_node_id == "confirm"
        assert texts(console)[-1] == "Is a@b.com right?"

    @pytest.mark.asyncio
    async def test_full_conversation(self, engine, store, console):
        await store.save_flow(menu_flow())
        for text in ("start", "Yes", "me@example.com"):
            await engine.process_message(USER, CONTACT, text)
        assert texts(console) == [
            "Welcome!", "Continue?", "Your email?", "Thanks, we will write to me@example.com",
        ]
        assert await store.get_session(USER, CONTACT) is None

    @pytest.mark.asyncio
    async def test_session_parked_on_action_node_reruns_it(self, engine, store, console):
        flow = make_flow([node("a", "textMessage", text="retry me"), node("w", "waitInput", variableName="x")],
                         [edge("a", "w")])
        await store.save_flow(flow)
        await store.create_session(USER, CONTACT, flow.id, "a", {})
        await engine.process_message(USER, CONTACT, "anything")
        assert texts(console) == ["retry me"]
        assert await current_node(store) == "w"


# ──────────────────────────────────────────────────────────────
#  Action outcomes
# ──────────────────────────────────────────────────────────────

class TestActionOutcomes:
    def api_flow(self, with_error_edge: bool):
        nodes = [
            node("api", "apiCall", apiUrl="https://shop.test/orders", saveResponseTo="order"),
            node("ok", "waitInput", message="Order {{order.id}} found"),
        ]
        edges = [edge("api", "ok", SUCCESS_HANDLE)]
        if with_error_edge:
            nodes.append(node("failed", "waitInput", message="Lookup failed"))
            edges.append(edge("api", "failed", ERROR_HANDLE))
        return make_flow(nodes, edges)

    @pytest.mark.asyncio
    async def test_success_saves_response_for_later_nodes(self, engine, store, console, http):
        http.request.return_value = HttpResponse(status=200, data={"id": "A-7"})
        await store.save_flow(self.api_flow(with_error_edge=True))
        await engine.process_message(USER, CONTACT, "start")

        session = await store.get_session(USER, CONTACT)
        assert session.current_node_id == "ok"
        assert session.variables["order"] == {"id": "A-7"}
        assert texts(console) == ["Order A-7 found"]

    @pytest.mark.asyncio
    async def test_failure_follows_error_edge(self, engine, store, console, http):
        http.request.side_effect = ExternalCallError("HTTP 500", status=500)
        await store.save_flow(self.api_flow(with_error_edge=True))
        await engine.process_message(USER, CONTACT, "start")
        assert await current_node(store) == "failed"
        assert texts(console) == ["Lookup failed"]

    @pytest.mark.asyncio
    async def test_failure_without_error_edge_deletes_session(self, engine, store, console, http):
        http.request.side_effect = ExternalCallError("HTTP 404", status=404)
        await store.save_flow(self.api_flow(with_error_edge=False))
        await engine.process_message(USER, CONTACT, "start")
        assert await store.get_session(USER, CONTACT) is None
        assert console.sent == []

    @pytest.mark.asyncio
    async def test_unkeyed_llm_provider_takes_error_edge(self, store, registry, http, settings, console):
        from config.settings import LLMConfig
        from core.ai import create_ai_service
        engine = FlowEngine(store, registry, http=http, settings=settings,
                            ai=create_ai_service(LLMConfig(provider="anthropic", api_key="${LLM_API_KEY}")))
        await store.save_flow(make_flow(
            [node("ask", "ai-query", prompt="Summarize order {{order}}", saveResponseTo="summary"),
             node("say", "textMessage", text="{{summary}}"),
             node("sorry", "textMessage", text="Sorry, try again later")],
            [edge("ask", "say", SUCCESS_HANDLE), edge("ask", "sorry", ERROR_HANDLE)],
        ))
        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["Sorry, try again later"]

    @pytest.mark.asyncio
    async def test_unknown_node_kind_ends_conversation(self, engine, store, console):
        await store.save_flow(make_flow(
            [node("a", "textMessage", text="hi"), node("v", "videoMessage"), node("c", "textMessage", text="never")],
            [edge("a", "v"), edge("v", "c")],
        ))
        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["hi"]
        assert await store.get_session(USER, CONTACT) is None


# ──────────────────────────────────────────────────────────────
#  Dead ends, self-heal and configuration errors
# ──────────────────────────────────────────────────────────────

class TestTermination:
    @pytest.mark.asyncio
    async def test_dead_end_then_fresh_conversation(self, engine, store, console):
        await store.save_flow(make_flow([node("a", "textMessage", text="done")], []))
        await engine.process_message(USER, CONTACT, "start")
        assert await store.get_session(USER, CONTACT) is None

        await engine.process_message(USER, CONTACT, "hello again")
        assert texts(console) == ["done"]

        await engine.process_message(USER, CONTACT, "start")
        assert texts(console) == ["done", "done"]

    @pytest.mark.asyncio
    async def test_orphaned_session_is_deleted(self, engine, store, console):
        await store.create_session(USER, CONTACT, "deleted_flow", "n1", {})
        await engine.process_message(USER, CONTACT, "hi")
        assert await store.get_session(USER, CONTACT) is None
        assert console.sent == []

    @pytest.mark.asyncio
    async def test_session_on_removed_node_is_deleted(self, engine, store, console):
        flow = make_flow([node("a", "waitInput", variableName="x")], [])
        await store.save_flow(flow)
        await store.create_session(USER, CONTACT, flow.id, "gone", {})
        await engine.process_message(USER, CONTACT, "hi")
        assert await store.get_session(USER, CONTACT) is None

    @pytest.mark.asyncio
    async def test_edge_to_missing_node_is_dead_end(self, engine, store, console):
        await store.save_flow(make_flow([node("a", "textMessage", text="x")], [edge("a", "ghost")]))
        await engine.process_message(USER, CONTACT, "start")
        assert await store.get_session(USER, CONTACT) is None

    @pytest.mark.asyncio
    async def test_action_cycle_is_capped(self, store, registry, http, ai, console):
        settings = Settings(engine=EngineConfig(max_action_hops=5))
        engine = FlowEngine(store, registry, http=http, ai=ai, settings=settings)
        # "a" is the entry; "b" and "c" loop forever
        await store.save_flow(make_flow(
            [node("a", "textMessage", text="in"), node("b", "textMessage", text="loop"),
             node("c", "textMessage", text="loop")],
            [edge("a", "b"), edge("b", "c"), edge("c", "b")],
        ))
        await engine.process_message(USER, CONTACT, "start")
        assert len(console.sent) == 5
        assert await store.get_session(USER, CONTACT) is None

    @pytest.mark.asyncio
    async def test_session_deleted_mid_walk_stops(self, store, registry, http, console):
        class DeletingAI:
            async def complete(self, prompt, system_message=None):
                s = await store.get_session(USER, CONTACT)
                await store.delete_session(s.id)
                return "answer"

        engine = FlowEngine(store, registry, http=http, ai=DeletingAI(), settings=Settings())
        await store.save_flow(make_flow(
            [node("q", "gptQuery", prompt="hi"), node("after", "textMessage", text="after")],
            [edge("q", "after")],
        ))
        await engine.process_message(USER, CONTACT, "start")
        assert console.sent == []
        assert await store.get_session(USER, CONTACT) is None

    @pytest.mark.asyncio
    async def test_store_failure_never_raises(self, registry, http, ai, settings):
        store = AsyncMock()
        store.get_session.side_effect = ConnectionError("db down")
        engine = FlowEngine(store, registry, http=http, ai=ai, settings=settings)
        await engine.process_message(USER, CONTACT, "start")


# ──────────────────────────────────────────────────────────────
#  Operator controls and flow edits
# ──────────────────────────────────────────────────────────────

class TestControls:
    @pytest.mark.asyncio
    async def test_reset_session(self, engine, store):
        await store.save_flow(menu_flow())
        await engine.process_message(USER, CONTACT, "start")
        assert await engine.reset_session(USER, CONTACT) is True
        assert await store.get_session(USER, CONTACT) is None
        assert await engine.reset_session(USER, CONTACT) is False

    @pytest.mark.asyncio
    async def test_flow_edit_visible_after_invalidate(self, engine, store, console):
        flow = make_flow([node("w", "waitInput", variableName="x"), node("t", "textMessage", text="old")],
                         [edge("w", "t")])
        await store.save_flow(flow)
        await engine.process_message(USER, CONTACT, "start")

        edited = make_flow([node("w", "waitInput", variableName="x"), node("t", "textMessage", text="new")],
                           [edge("w", "t")])
        await store.save_flow(edited)
        engine.invalidate_flow(USER, flow.id)

        await engine.process_message(USER, CONTACT, "reply")
        assert texts(console) == ["new"]


# ──────────────────────────────────────────────────────────────
#  Concurrency
# ──────────────────────────────────────────────────────────────

class TestConcurrency:
    def question_flow(self):
        return make_flow([
            node("lookup", "apiCall", apiUrl="https://crm.test/{{x}}"),
            node("ask", "waitInput", message="Question?", variableName="answer"),
            node("done", "textMessage", text="Got {{answer}}"),
        ], [edge("lookup", "ask"), edge("ask", "done")])

    @pytest.mark.asyncio
    async def test_same_contact_messages_are_serialized(self, engine, store, console, http):
        async def slow_request(*args, **kwargs):
            await asyncio.sleep(0.05)
            return HttpResponse(status=200, data={})

        http.request.side_effect = slow_request
        await store.save_flow(self.question_flow())

        await asyncio.gather(
            engine.process_message(USER, CONTACT, "start"),
            engine.process_message(USER, CONTACT, "42"),
        )

        assert http.request.await_count == 1
        assert texts(console) == ["Question?", "Got 42"]
        assert await store.get_session(USER, CONTACT) is None
        assert len(engine.locks) == 0

    @pytest.mark.asyncio
    async def test_distinct_contacts_do_not_interfere(self, engine, store, console, http):
        async def jittery_request(url, *args, **kwargs):
            await asyncio.sleep(0.001 * (hash(url) % 7))
            return HttpResponse(status=200, data={})

        http.request.side_effect = jittery_request
        await store.save_flow(self.question_flow())
        contacts = [f"+1555000{i:04d}" for i in range(20)]

        await asyncio.gather(*(engine.process_message(USER, c, "start") for c in contacts))
        for c in contacts:
            assert await current_node(store, c) == "ask"

        await asyncio.gather(*(engine.process_message(USER, c, f"answer-{c}") for c in contacts))
        for c in contacts:
            assert texts(console, c) == ["Question?", f"Got answer-{c}"]
            assert await store.get_session(USER, c) is None


class TestContactLocks:
    @pytest.mark.asyncio
    async def test_lock_entries_released(self):
        locks = ContactLocks()
        async with locks.hold("u", "c"):
            assert len(locks) == 1
        assert len(locks) == 0
