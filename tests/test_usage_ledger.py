from __future__ import annotations

import json
import time
from pathlib import Path

from prompttrain_gateway.gateway.usage import InMemoryUsageLedger, JsonlUsageLedger
from prompttrain_gateway.models import UsageEvent


def _event(request_id: str = "req-1") -> UsageEvent:
    return UsageEvent(
        request_id=request_id,
        credential_id="acc_1",
        routing_entity_id="train-a",
        provider_kind="cloud_runtime",
        model="claude-sonnet-4-5",
        stream=True,
        input_tokens=50,
        output_tokens=12,
        cache_tokens=7,
    )


def test_usage_ledger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "usage.jsonl"
    ledger = JsonlUsageLedger(path=str(log_path), enabled=True)
    try:
        ledger.record(_event())

        deadline = time.time() + 1.0
        content = ""
        while time.time() < deadline:
            if log_path.exists():
                content = log_path.read_text(encoding="utf-8")
                if content.strip():
                    break
            time.sleep(0.02)

        assert content.strip()
        payload = json.loads(content.strip().splitlines()[0])
        assert payload["event"] == "usage"
        assert payload["request_id"] == "req-1"
        assert payload["input_tokens"] == 50
        assert payload["cache_tokens"] == 7
    finally:
        ledger.close()


def test_disabled_usage_ledger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "usage.jsonl"
    ledger = JsonlUsageLedger(path=str(log_path), enabled=False)
    ledger.record(_event())
    ledger.close()

    assert not log_path.exists()
    assert ledger.dropped_records == 0


def test_in_memory_usage_ledger_keeps_events() -> None:
    ledger = InMemoryUsageLedger()
    ledger.record(_event("a"))
    ledger.record(_event("b"))
    ledger.close()

    assert [event.request_id for event in ledger.events] == ["a", "b"]
