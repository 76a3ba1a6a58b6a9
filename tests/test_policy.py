"""
Tests for policy.py - parsing, validation, snapshots and reload atomicity.
"""
import copy
import json
import threading
from unittest import mock

import pytest
import requests

from field_vault.errors import ConfigError, OperationTimeoutError, UnknownClassError
from field_vault.models import NONE
from field_vault.policy import (
    DictPolicySource,
    FilePolicySource,
    HttpPolicySource,
    PolicySource,
    PolicyStore,
    as_source,
    parse_policy,
)


class TestParsePolicy:
    """Validation of policy documents."""

    def test_valid_document(self, sample_policy):
        patterns, rules = parse_policy(json.dumps(sample_policy))
        assert set(rules) == {"PII_SSN", "PII_ACCOUNT", "PII_CARD"}
        assert rules["PII_CARD"].deterministic is True
        assert rules["PII_SSN"].authorized_roles == frozenset({"hr", "compliance"})
        assert len(patterns) == 5

    def test_evaluation_order(self, sample_policy):
        patterns, _ = parse_policy(json.dumps(sample_policy))
        # two-matcher pattern first, then declaration order
        assert [p.index for p in patterns] == [4, 0, 1, 2, 3]

    def test_explicit_priority_wins(self, sample_policy):
        sample_policy["patterns"][3]["priority"] = 10
        patterns, _ = parse_policy(json.dumps(sample_policy))
        assert patterns[0].index == 3

    def test_malformed_regex(self, sample_policy):
        sample_policy["patterns"].append({"class": "PII_SSN", "value": "([0-9"})
        with pytest.raises(ConfigError, match="invalid value expression"):
            parse_policy(json.dumps(sample_policy))

    @pytest.mark.parametrize("expr", [r"\d{99999999999}", "(" * 10000 + ")" * 10000])
    def test_oversized_regex(self, sample_policy, expr):
        sample_policy["patterns"].append({"class": "PII_SSN", "value": expr})
        with pytest.raises(ConfigError, match="invalid value expression"):
            parse_policy(json.dumps(sample_policy))

    def test_undefined_class(self, sample_policy):
        sample_policy["patterns"].append({"class": "PII_PASSPORT", "value": "X\\d+"})
        with pytest.raises(ConfigError, match="undefined class"):
            parse_policy(json.dumps(sample_policy))

    def test_non_string_class(self, sample_policy):
        sample_policy["patterns"].append({"class": ["PII_SSN"], "value": "x"})
        with pytest.raises(ConfigError, match="class must be a string"):
            parse_policy(json.dumps(sample_policy))

    def test_unknown_algorithm(self, sample_policy):
        sample_policy["classes"]["PII_SSN"]["algorithm"] = "des"
        with pytest.raises(ConfigError, match="unknown algorithm"):
            parse_policy(json.dumps(sample_policy))

    def test_empty_roles(self, sample_policy):
        sample_policy["classes"]["PII_SSN"]["authorized_roles"] = []
        with pytest.raises(ConfigError):
            parse_policy(json.dumps(sample_policy))

    def test_missing_key_ref(self, sample_policy):
        del sample_policy["classes"]["PII_SSN"]["key_ref"]
        with pytest.raises(ConfigError, match="key_ref"):
            parse_policy(json.dumps(sample_policy))

    def test_none_cannot_be_declared(self, sample_policy):
        sample_policy["classes"][NONE] = {"key_ref": "k", "authorized_roles": ["a"]}
        with pytest.raises(ConfigError):
            parse_policy(json.dumps(sample_policy))

    def test_pattern_needs_matcher(self, sample_policy):
        sample_policy["patterns"].append({"class": "PII_SSN"})
        with pytest.raises(ConfigError):
            parse_policy(json.dumps(sample_policy))

    def test_bool_priority_rejected(self, sample_policy):
        sample_policy["patterns"][0]["priority"] = True
        with pytest.raises(ConfigError):
            parse_policy(json.dumps(sample_policy))

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match="not valid JSON"):
            parse_policy("{not json")

    def test_unsupported_version(self, sample_policy):
        sample_policy["version"] = 2
        with pytest.raises(ConfigError, match="version"):
            parse_policy(json.dumps(sample_policy))


class TestSources:

    def test_as_source(self, tmp_path):
        assert isinstance(as_source({"classes": {}}), DictPolicySource)
        assert isinstance(as_source(str(tmp_path / "p.json")), FilePolicySource)
        assert isinstance(as_source("https://policy.example.com/p.json"), HttpPolicySource)
        src = DictPolicySource({})
        assert as_source(src) is src

    def test_as_source_rejects_other_types(self):
        with pytest.raises(ConfigError):
            as_source(42)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            FilePolicySource(str(tmp_path / "absent.json")).fetch()

    def test_http_source_fetch(self):
        response = mock.Mock(text='{"classes": {}}')
        with mock.patch("field_vault.policy.requests.get", return_value=response) as get:
            assert HttpPolicySource("http://p/policy", timeout=3).fetch() == '{"classes": {}}'
        get.assert_called_once_with("http://p/policy", headers={}, timeout=3)

    def test_http_source_timeout(self):
        with mock.patch("field_vault.policy.requests.get",
                        side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(OperationTimeoutError):
                HttpPolicySource("http://p/policy").fetch(timeout=0.1)

    def test_http_source_error(self):
        with mock.patch("field_vault.policy.requests.get",
                        side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(ConfigError):
                HttpPolicySource("http://p/policy").fetch()


class TestPolicyStore:

    def test_no_policy_loaded(self):
        store = PolicyStore()
        with pytest.raises(ConfigError):
            store.snapshot()
        with pytest.raises(ConfigError):
            store.reload()

    def test_load_publishes_snapshot(self, policy_store):
        snapshot = policy_store.snapshot()
        assert snapshot.revision == 1
        assert len(snapshot.digest) == 64
        assert snapshot.source == "<dict>"

    def test_rule_for(self, policy_store):
        assert policy_store.rule_for("PII_ACCOUNT").key_ref == "acct-key"

    def test_rule_for_unknown(self, policy_store):
        with pytest.raises(UnknownClassError):
            policy_store.rule_for("PII_PASSPORT")

    def test_snapshot_rules_are_read_only(self, policy_store):
        with pytest.raises(TypeError):
            policy_store.snapshot().rules["PII_X"] = None

    def test_failed_load_keeps_previous(self, policy_store, sample_policy):
        before = policy_store.snapshot()
        broken = copy.deepcopy(sample_policy)
        broken["patterns"].append({"class": "PII_SSN", "value": "("})
        with pytest.raises(ConfigError):
            policy_store.load(broken)
        assert policy_store.snapshot() is before

    def test_reload_from_file(self, policy_file, sample_policy):
        store = PolicyStore(str(policy_file))
        assert "PII_CARD" in store.snapshot().rules

        del sample_policy["classes"]["PII_CARD"]
        sample_policy["patterns"] = [p for p in sample_policy["patterns"] if p["class"] != "PII_CARD"]
        policy_file.write_text(json.dumps(sample_policy))

        snapshot = store.reload()
        assert snapshot.revision == 2
        assert "PII_CARD" not in store.snapshot().rules

    def test_reload_unchanged_keeps_revision(self, policy_file):
        store = PolicyStore(str(policy_file))
        first = store.snapshot()
        assert store.reload() is first

    def test_failed_reload_keeps_snapshot(self, policy_file):
        store = PolicyStore(str(policy_file))
        before = store.snapshot()
        policy_file.write_text("{broken")
        with pytest.raises(ConfigError):
            store.reload()
        assert store.snapshot() is before

    def test_oversized_regex_reload_is_logged(self, policy_file, sample_policy, caplog):
        store = PolicyStore(str(policy_file))
        before = store.snapshot()
        sample_policy["patterns"].append({"class": "PII_SSN", "value": r"\d{99999999999}"})
        policy_file.write_text(json.dumps(sample_policy))
        with pytest.raises(ConfigError):
            store.reload()
        assert store.snapshot() is before
        assert "keeping revision 1" in caplog.text

    def test_held_snapshot_survives_reload(self, policy_file, sample_policy):
        store = PolicyStore(str(policy_file))
        held = store.snapshot()
        sample_policy["classes"]["PII_SSN"]["authorized_roles"] = ["auditor"]
        policy_file.write_text(json.dumps(sample_policy))
        store.reload()
        assert held.rule_for("PII_SSN").authorized_roles == frozenset({"hr", "compliance"})
        assert store.rule_for("PII_SSN").authorized_roles == frozenset({"auditor"})


class _CountingSource(PolicySource):
    """Serves a fixed document and signals every fetch."""

    def __init__(self, document):
        self.document = document
        self.fetched = threading.Event()
        self.calls = 0

    def fetch(self, timeout=None):
        self.calls += 1
        if self.calls > 1:
            self.fetched.set()
        return json.dumps(self.document)


class TestAutoReload:

    def test_background_reload(self, sample_policy):
        source = _CountingSource(sample_policy)
        store = PolicyStore(source)
        store.start_auto_reload(0.01)
        try:
            assert source.fetched.wait(timeout=5)
        finally:
            store.stop_auto_reload()
        assert store.snapshot().revision == 1

    def test_interval_must_be_positive(self, policy_store):
        with pytest.raises(ValueError):
            policy_store.start_auto_reload(0)
