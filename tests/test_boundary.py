"""
End-to-end tests for boundary.py - on_send / on_receive over wire bytes.
"""
import copy
import itertools
import json
import threading

import pytest

from field_vault.boundary import MessageBoundary
from field_vault.errors import AuthorizationError, ConfigError, EncodingError, OperationCancelledError
from field_vault.policy import PolicySource, PolicyStore


@pytest.fixture
def boundary(policy_store, key_store, audit_sink):
    return MessageBoundary(policy_store, key_store, audit_sink, identity="producer-1")


class TestMessageBoundary:

    def test_round_trip(self, boundary, sample_record):
        data = boundary.on_send(sample_record)
        assert isinstance(data, bytes)
        assert boundary.on_receive(data, {"hr", "payments"}) == sample_record

    def test_sensitive_values_never_on_wire(self, boundary, sample_record):
        data = boundary.on_send(sample_record)
        for secret in (b"1234567890", b"123-45-6789", b"4111111111111111"):
            assert secret not in data
        assert b"hello" in data

    def test_account_example_on_wire(self, boundary):
        data = boundary.on_send({"accountNumber": "1234567890", "amount": "500.00", "note": "hello"})
        fields = json.loads(data)["fields"]
        assert fields["accountNumber"]["p"]["c"] == "PII_ACCOUNT"
        assert fields["amount"] == {"v": "500.00"}
        assert fields["note"] == {"v": "hello"}

    def test_unauthorized_receive(self, boundary, sample_record):
        data = boundary.on_send(sample_record)
        with pytest.raises(AuthorizationError):
            boundary.on_receive(data, {"payments"})

    def test_malformed_bytes(self, boundary):
        with pytest.raises(EncodingError):
            boundary.on_receive(b"\x00garbage", {"hr"})

    def test_non_mapping_record(self, boundary):
        with pytest.raises(EncodingError):
            boundary.on_send("plain string")

    def test_send_uses_identity(self, boundary, audit_sink):
        boundary.on_send({"accountNumber": "1234567890"})
        assert [e.caller for e in audit_sink.events] == ["producer-1"]

    def test_receive_records_caller(self, boundary, audit_sink):
        data = boundary.on_send({"accountNumber": "1234567890"})
        audit_sink.events.clear()
        boundary.on_receive(data, {"payments"}, caller="consumer-7")
        assert [e.caller for e in audit_sink.events] == ["consumer-7"]

    def test_cancelled_send(self, boundary, sample_record):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            boundary.on_send(sample_record, cancel=cancel)

    def test_failed_reload_keeps_behaviour(self, boundary, policy_file, sample_record):
        boundary.policy_store.load(str(policy_file))
        before = json.loads(boundary.on_send(sample_record))["fields"]
        policy_file.write_text("{oops")
        with pytest.raises(ConfigError):
            boundary.policy_store.reload()
        after = json.loads(boundary.on_send(sample_record))["fields"]

        def shape(fields):
            return {k: (shape(v["r"]) if "r" in v else next(iter(v))) for k, v in fields.items()}

        assert shape(before) == shape(after)

    def test_round_trips_while_policy_reloads(self, key_store, sample_policy, sample_record):
        variant = copy.deepcopy(sample_policy)
        variant["classes"]["PII_CARD"]["deterministic"] = False
        variant["classes"]["PII_CARD"]["algorithm"] = "xchacha20poly1305"
        variant["patterns"].reverse()

        class AlternatingSource(PolicySource):
            def __init__(self):
                self.documents = itertools.cycle([variant, sample_policy])

            def fetch(self, timeout=None):
                return json.dumps(next(self.documents))

        store = PolicyStore(AlternatingSource())
        boundary = MessageBoundary(store, key_store)
        stop = threading.Event()
        errors = []
        revisions = []

        def reloader():
            while not stop.is_set():
                revisions.append(store.reload().revision)
                stop.wait(0.001)

        def worker():
            try:
                for _ in range(50):
                    data = boundary.on_send(copy.deepcopy(sample_record))
                    assert boundary.on_receive(data, {"hr", "payments"}) == sample_record
            except Exception as e:
                errors.append(e)

        swapper = threading.Thread(target=reloader)
        workers = [threading.Thread(target=worker) for _ in range(4)]
        swapper.start()
        for t in workers:
            t.start()
        for t in workers:
            t.join(timeout=30)
        stop.set()
        swapper.join(timeout=5)

        assert errors == []
        assert len(revisions) > 1

    def test_key_rotation_between_send_and_receive(self, boundary, key_store, sample_record):
        data = boundary.on_send(copy.deepcopy(sample_record))
        for ref in ("ssn-key", "acct-key", "card-key"):
            key_store.rotate(ref)
        assert boundary.on_receive(data, {"hr", "payments"}) == sample_record


class TestClientHooks:

    def test_serializer_pair(self, boundary, sample_record):
        serialize = boundary.value_serializer()
        deserialize = boundary.value_deserializer(["hr", "payments"], caller="consumer")
        assert deserialize(serialize(sample_record)) == sample_record

    def test_deserializer_enforces_roles(self, boundary, sample_record):
        deserialize = boundary.value_deserializer(["hr"])
        with pytest.raises(AuthorizationError):
            deserialize(boundary.value_serializer()(sample_record))

    def test_default_timeout_applies(self, policy_store, key_store, monkeypatch):
        seen = {}
        boundary = MessageBoundary(policy_store, key_store, default_timeout=2.5)
        original = boundary.codec.protect

        def spy(*args, **kwargs):
            seen["timeout"] = kwargs["timeout"]
            return original(*args, **kwargs)

        monkeypatch.setattr(boundary.codec, "protect", spy)
        boundary.on_send({"a": "x"})
        assert seen["timeout"] == 2.5
