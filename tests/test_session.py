"""Tests for ChatSession history and turn handling."""

import asyncio

import httpx

from openrouter_chat.llm.builder import HISTORY_MEDIA_NOTE
from openrouter_chat.llm.provider import OpenRouterProvider
from openrouter_chat.session import ChatSession
from openrouter_chat.types import FileAttachment, Message, Role

from conftest import DONE, FakeServer, frame, sse_response


def _session(app_config, server: FakeServer, **kwargs) -> ChatSession:
    provider = OpenRouterProvider(app_config, transport=server.transport)
    return ChatSession(provider, app_config, credential=lambda: "sk-or-test", **kwargs)


class TestHistory:
    async def test_successful_turn_recorded(self, app_config):
        server = FakeServer(sse_response(frame("Hello!"), DONE))
        session = _session(app_config, server)
        reply = await session.send("hi")
        assert reply == Message.assistant("Hello!")
        assert session.messages == [Message.user("hi"), Message.assistant("Hello!")]
        assert session.last_result.content == "Hello!"
        assert not session.busy

    async def test_history_sent_on_next_turn(self, app_config):
        server = FakeServer(
            sse_response(frame("one"), DONE),
            sse_response(frame("two"), DONE),
        )
        session = _session(app_config, server)
        await session.send("first")
        await session.send("second")
        roles = [m["role"] for m in server.payloads[1]["messages"]]
        assert roles == ["system", "user", "assistant", "user"]
        assert server.payloads[1]["messages"][2]["content"] == "one"

    async def test_failed_turn_not_recorded(self, app_config, recorder):
        server = FakeServer(httpx.Response(401, json={}))
        session = _session(app_config, server)
        assert await session.send("hi", callbacks=recorder.callbacks()) is None
        assert session.messages == []
        assert len(recorder.errors) == 1

    async def test_reset(self, app_config):
        server = FakeServer(sse_response(frame("x"), DONE))
        session = _session(app_config, server)
        await session.send("hi")
        session.reset()
        assert session.messages == []
        assert session.last_result is None


class TestTurnContent:
    async def test_images_become_parts(self, app_config):
        server = FakeServer(sse_response(frame("a dog"), DONE))
        session = _session(app_config, server)
        await session.send("what is it?", images=["https://x/dog.jpg"])
        user = server.payloads[0]["messages"][-1]
        assert user["content"][0] == {"type": "text", "text": "what is it?"}
        assert user["content"][1]["image_url"]["url"] == "https://x/dog.jpg"
        assert server.payloads[0]["model"] == "x-ai/grok-vision-beta"

    async def test_images_sent_in_high_detail(self, app_config):
        server = FakeServer(sse_response(DONE))
        session = _session(app_config, server)
        await session.send("zoom in", images=["https://x/map.png"])
        part = server.payloads[0]["messages"][-1]["content"][1]
        assert part["image_url"]["detail"] == "high"

    async def test_web_search_after_image_turn(self, app_config):
        server = FakeServer(
            sse_response(frame("a cat"), DONE),
            sse_response(frame("news"), DONE),
        )
        session = _session(app_config, server)
        session.web_search = True
        await session.send("what is it?", images=["https://x/cat.jpg"])
        await session.send("latest news on cats?")

        first, second = server.payloads
        assert first["model"] == "x-ai/grok-vision-beta"
        assert second["model"] == "x-ai/grok-4:online"
        assert second["plugins"][0]["id"] == "web"
        assert second["messages"][1]["content"].endswith(HISTORY_MEDIA_NOTE)

    async def test_files_shared_across_turns(self, app_config):
        server = FakeServer(
            sse_response(frame("read it"), DONE),
            sse_response(frame("still here"), DONE),
        )
        session = _session(app_config, server)
        await session.send("summarise", files=[FileAttachment("notes.txt", "alpha")])
        await session.send("and again")

        first = server.payloads[0]["messages"]
        assert first[1]["role"] == "system"
        assert "uploaded the following files: notes.txt" in first[1]["content"]
        second = server.payloads[1]["messages"]
        assert "previously shared these files: notes.txt" in second[1]["content"]

    async def test_web_search_per_turn(self, app_config):
        server = FakeServer(sse_response(DONE), sse_response(DONE))
        session = _session(app_config, server)
        session.web_search = True
        await session.send("news")
        await session.send("offline", web_search=False)
        assert server.payloads[0]["model"].endswith(":online")
        assert "plugins" not in server.payloads[1]

    async def test_persona_used_as_system_prompt(self, app_config):
        server = FakeServer(sse_response(DONE))
        session = _session(app_config, server, persona="You are a pirate.")
        await session.send("ahoy")
        system = server.payloads[0]["messages"][0]["content"]
        assert system.startswith("You are a pirate.")

    async def test_model_override(self, app_config):
        server = FakeServer(sse_response(DONE))
        session = _session(app_config, server)
        session.model = "anthropic/claude-sonnet"
        await session.send("hi")
        assert server.payloads[0]["model"] == "anthropic/claude-sonnet"


class TestSupersede:
    async def test_new_turn_cancels_previous(self, app_config, recorder):
        first_chunk = asyncio.Event()
        gate = asyncio.Event()

        async def slow_body():
            yield frame("stale").encode()
            await gate.wait()
            yield DONE.encode()

        server = FakeServer(
            httpx.Response(200, content=slow_body()),
            sse_response(frame("fresh"), DONE),
        )
        session = _session(app_config, server)
        old = asyncio.create_task(session.send(
            "first", callbacks=recorder.callbacks(on_chunk=lambda _t: first_chunk.set()),
        ))
        await asyncio.wait_for(first_chunk.wait(), 1)
        assert session.busy

        reply = await session.send("second")
        assert await asyncio.wait_for(old, 1) is None
        assert reply.content == "fresh"
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.messages[0].content == "second"
        assert recorder.completions == 0
        assert recorder.errors == []

    async def test_cancel_idle_session(self, app_config):
        session = _session(app_config, FakeServer())
        assert not session.cancel()
