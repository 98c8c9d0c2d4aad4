import pytest

from telemetry import annotate_span, init_telemetry, trace_span


@trace_span("test.sync", attr_from_args=lambda value: {"test.value": value})
def double(value):
    annotate_span(test_note="doubled")
    return value * 2


@trace_span("test.async", static_attrs={"test.kind": "async"})
async def fail_async():
    raise RuntimeError("nope")


def test_disabled_init_is_noop():
    init_telemetry("pulse-rss-tests")
    init_telemetry("pulse-rss-tests")


def test_trace_span_passes_results_through():
    assert double(21) == 42
    assert double.__name__ == "double"


@pytest.mark.asyncio
async def test_trace_span_reraises_from_coroutines():
    with pytest.raises(RuntimeError, match="nope"):
        await fail_async()


def test_bad_attribute_callback_does_not_break_call():
    @trace_span("test.bad_attrs", attr_from_args=lambda: {})
    def takes_arg(value):
        return value

    assert takes_arg("ok") == "ok"
