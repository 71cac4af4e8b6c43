"""Tests for outcome determination parsing and the OpenRouter client."""
import json

import pytest
import requests

from poolbet import judge as judge_module
from poolbet.judge import OutcomeJudge, parse_markets, parse_settlement, strip_code_fences
from poolbet.models import ConsensusResult

VERDICT = ConsensusResult("Real Madrid", "Barcelona", "2-1", True, 3, 4)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


def _completion(content):
    return {"choices": [{"message": {"content": content}}]}


class TestParsing:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences(None) == ""

    def test_parse_settlement(self):
        content = """```json
        {"matchParams": "2-1", "results": [
            {"marketName": "Match Result", "winningOutcome": "Home Win"},
            {"marketName": "Total Goals", "winningOutcome": "VOID"}
        ]}
        ```"""
        decision = parse_settlement(content)
        assert decision.summary == "2-1"
        assert [(r.market_name, r.winning_outcome) for r in decision.results] == [
            ("Match Result", "Home Win"),
            ("Total Goals", "VOID"),
        ]

    @pytest.mark.parametrize("content", ["", "not json", "[1, 2]", '{"results": "nope"}'])
    def test_parse_settlement_malformed(self, content):
        assert parse_settlement(content).results == []

    def test_parse_settlement_skips_bad_entries(self):
        content = json.dumps({"results": [
            {"marketName": "Match Result"},
            {"marketName": "", "winningOutcome": "Draw"},
            "garbage",
            {"marketName": "Total Goals", "winningOutcome": "Under 2.5"},
        ]})
        assert [r.market_name for r in parse_settlement(content).results] == ["Total Goals"]

    def test_parse_markets(self):
        content = json.dumps({"sport": "Football", "markets": [
            {"name": "Match Result", "outcomes": ["Home Win", "Draw", "Away Win"]},
            {"name": "Match Result", "outcomes": ["Yes", "No"]},
            {"name": "One Sided", "outcomes": ["Yes"]},
        ]})
        markets = parse_markets(content)
        assert len(markets) == 1
        assert markets[0].outcomes == ["Home Win", "Draw", "Away Win"]


class TestOutcomeJudge:
    def test_settle_without_key_is_mock(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("no request expected")

        monkeypatch.setattr(judge_module.requests, "post", fail)
        decision = OutcomeJudge(api_key="").settle_markets(VERDICT, ["Match Result"])
        assert decision.summary == "Mock Settle"
        assert decision.results == []

    def test_settle_sends_consensus_and_markets(self, monkeypatch):
        sent = {}

        def fake_post(url, headers=None, json=None, timeout=None):
            sent.update(url=url, headers=headers, json=json)
            return FakeResponse(_completion(
                '```json{"matchParams": "2-1", "results": [{"marketName": "Match Result", "winningOutcome": "Home Win"}]}```'
            ))

        monkeypatch.setattr(judge_module.requests, "post", fake_post)
        judge = OutcomeJudge(api_key="key", api_url="https://example.test/chat", model="test-model")

        decision = judge.settle_markets(VERDICT, ["Match Result"])

        assert decision.results[0].winning_outcome == "Home Win"
        assert sent["url"] == "https://example.test/chat"
        assert sent["headers"]["Authorization"] == "Bearer key"
        assert sent["json"]["model"] == "test-model"
        prompt = sent["json"]["messages"][0]["content"]
        assert "Consensus: 2-1 (Votes: 3/4)" in prompt
        assert '["Match Result"]' in prompt

    def test_settle_http_error_is_empty(self, monkeypatch):
        monkeypatch.setattr(judge_module.requests, "post", lambda *a, **k: FakeResponse({}, 502))
        decision = OutcomeJudge(api_key="key").settle_markets(VERDICT, ["Match Result"])
        assert decision.results == []

    def test_settle_timeout_is_empty(self, monkeypatch):
        def timeout(*args, **kwargs):
            raise requests.exceptions.Timeout("slow")

        monkeypatch.setattr(judge_module.requests, "post", timeout)
        assert OutcomeJudge(api_key="key").settle_markets(VERDICT, ["Match Result"]).results == []

    def test_generate_markets(self, monkeypatch):
        content = json.dumps({"markets": [{"name": "Total Goals", "outcomes": ["Over 2.5", "Under 2.5"]}]})
        monkeypatch.setattr(judge_module.requests, "post", lambda *a, **k: FakeResponse(_completion(content)))

        markets = OutcomeJudge(api_key="key").generate_markets("Real Madrid", "Barcelona")

        assert [m.name for m in markets] == ["Total Goals"]

    def test_generate_markets_without_key(self):
        assert OutcomeJudge(api_key="").generate_markets("Real Madrid", "Barcelona") == []

    @pytest.mark.parametrize("body", [
        [],
        {"choices": "none"},
        {"choices": ["oops"]},
        {"choices": [{"message": "text"}]},
        {"choices": [{"message": {"content": {"a": 1}}}]},
    ])
    def test_unexpected_completion_shapes_are_empty(self, monkeypatch, body):
        monkeypatch.setattr(judge_module.requests, "post", lambda *a, **k: FakeResponse(body))
        client = OutcomeJudge(api_key="key")

        assert client.settle_markets(VERDICT, ["Match Result"]).results == []
        assert client.generate_markets("Real Madrid", "Barcelona") == []
