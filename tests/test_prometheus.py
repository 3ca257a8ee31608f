from kumo_monitor.prometheus import MonitorMetrics


def test_monitor_metrics_counters_and_gauges():
    metrics = MonitorMetrics()

    metrics.inc_poll("ok")
    metrics.inc_poll("failed")
    metrics.inc_deferral()
    metrics.inc_log_line("tailer")
    metrics.inc_restart("")
    metrics.inc_save("ok")
    metrics.set_samples(12)
    metrics.set_queue_depth(3)

    output = metrics.generate_latest()
    assert b'kmon_polls_total{outcome="failed"} 1.0' in output
    assert b"kmon_deferrals_total 1.0" in output
    assert b'kmon_log_lines_total{source="tailer"} 1.0' in output
    assert b'kmon_stream_restarts_total{source="default"} 1.0' in output
    assert b'kmon_state_saves_total{outcome="ok"} 1.0' in output
    assert b"kmon_samples_retained 12.0" in output
    assert b"kmon_queue_depth 3.0" in output


def test_registries_are_independent():
    first, second = MonitorMetrics(), MonitorMetrics()
    first.inc_deferral()
    assert b"kmon_deferrals_total 0.0" in second.generate_latest()
