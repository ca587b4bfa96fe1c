"""
Unit Tests for the tool executors and dispatcher.
"""

from types import SimpleNamespace

import pytest

from lumi.core.errors import ImageGenerationError, ToolArgumentError
from lumi.core.models import Difficulty, FunctionCall
from lumi.services.tools import (
    IMAGE_TOOL, PROGRESS_TOOL, TOOL_DECLARATIONS, GeminiImageGenerator, ImageGenerationTool,
    ProgressUpdateTool, ToolDispatcher, default_tools, live_tools,
)

from fakes import FakeHost, FakeImageGenerator, StatusError


def image_call(prompt="a triangle", call_id="call-1"):
    return FunctionCall(id=call_id, name=IMAGE_TOOL, args={"prompt": prompt})


def progress_call(call_id="call-2", **args):
    args = args or {"score": 72, "difficulty": "Intermediate", "reason": "Solved 3/4"}
    return FunctionCall(id=call_id, name=PROGRESS_TOOL, args=args)


class TestDeclarations:

    def test_two_tools_with_required_fields(self):
        by_name = {d["name"]: d for d in TOOL_DECLARATIONS}
        assert set(by_name) == {IMAGE_TOOL, PROGRESS_TOOL}
        assert by_name[IMAGE_TOOL]["parameters"]["required"] == ["prompt"]
        assert by_name[PROGRESS_TOOL]["parameters"]["required"] == ["score", "difficulty", "reason"]

    def test_live_tool_shape(self):
        assert live_tools() == [{"function_declarations": TOOL_DECLARATIONS}]


class TestProgressUpdateTool:

    def test_parse_overwrites_all_fields(self):
        stats = ProgressUpdateTool.parse({"score": 40, "difficulty": "Beginner", "reason": "Guessing"})
        assert stats.understanding_score == 40.0
        assert stats.difficulty_level is Difficulty.BEGINNER
        assert stats.last_update_reason == "Guessing"

    def test_score_is_clamped(self):
        assert ProgressUpdateTool.parse({"score": 150, "difficulty": "Advanced"}).understanding_score == 100.0
        assert ProgressUpdateTool.parse({"score": -3, "difficulty": "Advanced"}).understanding_score == 0.0

    @pytest.mark.parametrize("args", [
        {"score": "lots", "difficulty": "Beginner"},
        {"score": True, "difficulty": "Beginner"},
        {"score": float("nan"), "difficulty": "Beginner"},
        {"score": 50, "difficulty": "Expert"},
        {"difficulty": "Beginner"},
    ])
    def test_malformed_arguments(self, args):
        with pytest.raises(ToolArgumentError):
            ProgressUpdateTool.parse(args)

    @pytest.mark.asyncio
    async def test_execute_replaces_stats_and_chimes(self):
        host = FakeHost()
        result = await ProgressUpdateTool().execute(progress_call(), host)
        assert result == {"result": "Dashboard updated."}
        assert host.stats.understanding_score == 72.0
        assert host.chimes == ["notification"]


class TestImageGenerationTool:

    @pytest.mark.asyncio
    async def test_success_posts_image_and_chimes(self):
        host, generator = FakeHost(), FakeImageGenerator(data=b"img")
        result = await ImageGenerationTool(generator).execute(image_call(), host)

        assert result == {"result": "Image displayed."}
        assert generator.calls[0]["aspect_ratio"] == "16:9"
        assert generator.calls[0]["prompt"].endswith("a triangle")
        assert [m.role for m in host.messages] == ["system", "assistant"]
        assert "Drawing" in host.messages[0].text
        assert host.messages[1].image == "data:image/png;base64,aW1n"
        assert host.chimes == ["success"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, fragment", [
        (StatusError(403, "Forbidden"), "Permission denied"),
        (Exception("429 RESOURCE_EXHAUSTED"), "quota"),
        (ImageGenerationError("No image data returned from model"), "Image generation failed"),
    ])
    async def test_failure_explains_and_asks_for_apology(self, error, fragment):
        host = FakeHost()
        result = await ImageGenerationTool(FakeImageGenerator(error=error)).execute(image_call(), host)

        assert "Apologize" in result["result"]
        assert fragment in host.messages[-1].text
        assert host.messages[-1].role == "system"
        assert host.chimes == []

    @pytest.mark.asyncio
    async def test_missing_prompt(self):
        host = FakeHost()
        generator = FakeImageGenerator()
        result = await ImageGenerationTool(generator).execute(image_call(prompt=""), host)
        assert "Apologize" in result["result"]
        assert generator.calls == []


class TestToolDispatcher:

    @pytest.fixture
    def dispatcher(self):
        return ToolDispatcher(default_tools(FakeImageGenerator()))

    @pytest.mark.asyncio
    async def test_one_response_per_call_in_order(self, dispatcher):
        host = FakeHost()
        calls = [image_call(call_id="a"), progress_call(call_id="b")]
        responses = await dispatcher.dispatch_all(calls, host)
        assert [(r.id, r.name) for r in responses] == [("a", IMAGE_TOOL), ("b", PROGRESS_TOOL)]

    @pytest.mark.asyncio
    async def test_bad_arguments_still_answer(self, dispatcher):
        host = FakeHost()
        response = await dispatcher.dispatch(progress_call(call_id="x", score=10, difficulty="Wizard"), host)
        assert response.id == "x"
        assert "error" in response.response
        assert host.messages[-1].role == "system"
        assert host.stats is None

    @pytest.mark.asyncio
    async def test_unknown_tool_still_answers(self, dispatcher):
        response = await dispatcher.dispatch(FunctionCall(id="z", name="launch_rocket"), FakeHost())
        assert response.id == "z"
        assert "Unknown tool" in response.response["error"]

    def test_progress_only_without_generator(self):
        assert ToolDispatcher(default_tools(None)).names == [PROGRESS_TOOL]


class TestGeminiImageGenerator:

    def _client(self, response=None, error=None):
        calls = []

        async def generate_content(**kwargs):
            calls.append(kwargs)
            if error is not None:
                raise error
            return response

        client = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content)))
        return client, calls

    @staticmethod
    def _response(*parts):
        return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])

    @pytest.mark.asyncio
    async def test_returns_first_inline_image(self):
        text_part = SimpleNamespace(inline_data=None, text="here you go")
        image_part = SimpleNamespace(inline_data=SimpleNamespace(data=b"png-bytes", mime_type="image/png"))
        client, calls = self._client(self._response(text_part, image_part))

        image = await GeminiImageGenerator(client).generate("a cell", "16:9")

        assert image.data == b"png-bytes"
        assert calls[0]["contents"] == "a cell"
        assert calls[0]["config"].image_config.aspect_ratio == "16:9"

    @pytest.mark.asyncio
    async def test_no_image_raises(self):
        client, _ = self._client(self._response(SimpleNamespace(inline_data=None, text="sorry")))
        with pytest.raises(ImageGenerationError):
            await GeminiImageGenerator(client).generate("a cell", "16:9")
