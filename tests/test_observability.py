import csv
import json
import logging

import observability


def test_log_event_emits_sorted_json(caplog) -> None:
    logger = logging.getLogger("test_observability")
    with caplog.at_level(logging.INFO, logger="test_observability"):
        observability.log_event(logger, "stream_connected", stream="BTCUSDT:kline", reconnects=0)

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "stream_connected"
    assert payload["stream"] == "BTCUSDT:kline"
    assert payload["reconnects"] == 0
    assert "ts" in payload


def test_log_event_falls_back_to_repr(caplog) -> None:
    logger = logging.getLogger("test_observability")
    with caplog.at_level(logging.INFO, logger="test_observability"):
        observability.log_event(logger, "odd", value={1, 2})

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["value"] == repr({1, 2})


def test_record_metric_appends_csv_rows(tmp_path, monkeypatch) -> None:
    path = tmp_path / "metrics" / "engine.csv"
    monkeypatch.setattr(observability, "_metrics_sink", observability._CsvMetricsSink(str(path)))

    observability.record_metric("stream_reconnects", 2, labels={"stream": "BTCUSDT:depth"})
    observability.record_metric("analysis_cycle_seconds", 0.25)

    with path.open() as handle:
        rows = list(csv.DictReader(handle))
    assert [row["metric"] for row in rows] == ["stream_reconnects", "analysis_cycle_seconds"]
    assert float(rows[0]["value"]) == 2.0
    assert json.loads(rows[0]["labels"]) == {"stream": "BTCUSDT:depth"}


def test_empty_metrics_path_disables_sink(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("METRICS_PATH", "")
    monkeypatch.setattr(observability, "_metrics_sink", observability._CsvMetricsSink())

    assert observability._metrics_sink.enabled is False
    observability.record_metric("ignored", 1.0)
    assert list(tmp_path.iterdir()) == []


def test_timed_records_block_duration(tmp_path, monkeypatch) -> None:
    path = tmp_path / "metrics.csv"
    monkeypatch.setattr(observability, "_metrics_sink", observability._CsvMetricsSink(str(path)))

    with observability.timed("analysis_cycle_seconds", symbols=2):
        pass

    with path.open() as handle:
        rows = list(csv.DictReader(handle))
    assert rows[0]["metric"] == "analysis_cycle_seconds"
    assert float(rows[0]["value"]) >= 0.0
    assert json.loads(rows[0]["labels"]) == {"symbols": 2}
