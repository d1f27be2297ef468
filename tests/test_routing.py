import json

import pytest

from chatgate.errors import MissingRoutingChoice, UpstreamTimeout
from chatgate.llm_queue import InferenceQueue
from chatgate.routing import (
    RoutingEngine,
    has_opt_out,
    heuristic_decision,
    is_conversational_prompt,
    is_explicit_search_request,
    is_information_seeking,
    needs_fresh_information,
)
from tests.conftest import make_settings
from tests.fakes import FakeLLMClient


def make_engine(tmp_path, fake_llm=None):
    fake = fake_llm or FakeLLMClient()
    return RoutingEngine(fake, InferenceQueue(), make_settings(tmp_path)), fake


def test_lexical_signals():
    assert is_explicit_search_request("Search the web for rust 1.80 notes")
    assert not is_explicit_search_request("what is rust")
    assert has_opt_out("Explain TCP, no web search please")
    assert is_conversational_prompt("hello")
    assert is_conversational_prompt("Thanks!")
    assert is_conversational_prompt("ok")
    assert not is_conversational_prompt("explain how tcp works")
    assert is_information_seeking("how do I install pytest")
    assert not is_information_seeking("I love rainy days")
    assert not is_information_seeking("hi")
    assert needs_fresh_information("latest news on the election")
    assert not needs_fresh_information("no news please, just explain sorting")


def test_heuristic_decision_respects_override():
    decision = heuristic_decision("what is the weather forecast today", True)
    assert decision.use_web is True
    assert decision.source == "heuristic"
    assert decision.confidence == 0.5
    assert heuristic_decision("what is the weather forecast today", False).use_web is False


@pytest.mark.asyncio
async def test_missing_override_is_rejected(tmp_path):
    engine, _ = make_engine(tmp_path)
    with pytest.raises(MissingRoutingChoice):
        await engine.decide("hello", None)


@pytest.mark.asyncio
async def test_override_off_never_uses_web_or_classifier(tmp_path):
    engine, fake = make_engine(tmp_path)
    decision = await engine.decide("search the web for the latest news", False)
    assert decision.use_web is False
    assert decision.reason == "client_override_off"
    assert decision.source == "explicit"
    assert fake.calls == []


@pytest.mark.asyncio
async def test_explicit_search_short_circuits_classifier(tmp_path):
    engine, fake = make_engine(tmp_path)
    decision = await engine.decide("search the web for the current exchange rate", True)
    assert decision.use_web is True
    assert decision.explicit_search is True
    assert decision.reason == "explicit_search"
    assert fake.calls_for("classifier") == []


@pytest.mark.asyncio
async def test_explicit_search_wins_over_opt_out_wording(tmp_path):
    engine, fake = make_engine(tmp_path)
    decision = await engine.decide("search the web for why my laptop says no internet", True)
    assert decision.use_web is True
    assert decision.reason == "explicit_search"
    assert fake.calls_for("classifier") == []


def test_negated_search_phrase_is_not_explicit():
    assert not is_explicit_search_request("what is a monad? no web search")
    assert not is_explicit_search_request("don't search for anything, just answer")
    assert is_explicit_search_request("search the web for why my laptop says no internet")


@pytest.mark.asyncio
async def test_opt_out_and_conversational_skip_classifier(tmp_path):
    engine, fake = make_engine(tmp_path)
    opt_out = await engine.decide("what is a monad? no web search", True)
    assert opt_out.use_web is False
    assert opt_out.reason == "opt_out"
    chat = await engine.decide("hello", True)
    assert chat.use_web is False
    assert chat.info_seeking is False
    assert chat.reason == "conversational"
    assert fake.calls == []


@pytest.mark.asyncio
async def test_classifier_result_is_used(tmp_path):
    reply = json.dumps({"info_seeking": True, "needs_web": True, "confidence": 0.8, "reason": "time-sensitive"})
    engine, fake = make_engine(tmp_path, FakeLLMClient(classifier_response=reply))
    decision = await engine.decide(
        "Who won the match between the two clubs", True, prior_prompts=["a", "b", "c"]
    )
    assert decision.use_web is True
    assert decision.source == "classifier"
    assert decision.reason == "time-sensitive"
    assert decision.confidence == 0.8
    call = fake.calls_for("classifier")[0]
    assert call["temperature"] == 0
    assert call["options"] == {"top_p": 0.1}
    assert "- b" in call["user"] and "- c" in call["user"] and "- a" not in call["user"]


@pytest.mark.asyncio
async def test_classifier_timeout_falls_back_to_heuristic(tmp_path):
    fake = FakeLLMClient(failures={"classifier": UpstreamTimeout("classifier timed out")})
    engine, _ = make_engine(tmp_path, fake)
    decision = await engine.decide("how does a b-tree split pages", True)
    assert decision.source == "heuristic"
    assert decision.confidence == 0.5
    assert decision.info_seeking is True
    assert decision.use_web is True


@pytest.mark.asyncio
async def test_classifier_garbage_falls_back_to_heuristic(tmp_path):
    engine, _ = make_engine(tmp_path, FakeLLMClient(classifier_response="not json at all"))
    decision = await engine.decide("I enjoy long walks on the beach", True)
    assert decision.source == "heuristic"
    assert decision.use_web is False
