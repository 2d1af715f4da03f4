from liverelay.streaming.backlog import BacklogMonitor


def test_backlog_bytes_convert_to_seconds():
    m = BacklogMonitor(sample_rate=16000, sample_width=2)
    assert m.bytes_to_sec(32000) == 1.0
    assert m.bytes_to_sec(0) == 0.0
    assert m.bytes_to_sec(-10) == 0.0


def test_backlog_below_threshold_is_normal():
    m = BacklogMonitor(warn_backlog_sec=3.0)
    d = m.evaluate(32000 * 2)
    assert d.lagging is False
    assert d.reason == "normal"
    assert d.backlog_sec == 2.0


def test_backlog_at_threshold_is_lagging():
    m = BacklogMonitor(warn_backlog_sec=3.0)
    d = m.evaluate(32000 * 3)
    assert d.lagging is True
    assert d.reason == "lagging"
    assert d.backlog_sec == 3.0


def test_backlog_threshold_has_floor():
    m = BacklogMonitor(warn_backlog_sec=0.0)
    assert m.warn_backlog_sec == 0.2
    assert m.evaluate(0).lagging is False
