import io
from datetime import datetime

import pytest
from rich.console import Console

from kubeassay.core.errors import RecorderStateError
from kubeassay.core.models import Result
from kubeassay.recorder.recorder import StateRecorder, stack_recorders
from kubeassay.recorder.tap import TapWriter
from kubeassay.recorder.tree import TreeWriter


def test_results_need_an_open_document():
    recorder = StateRecorder()
    with pytest.raises(RecorderStateError):
        recorder.update(Result.info("nowhere"))


def test_steps_need_an_open_document():
    recorder = StateRecorder()
    with pytest.raises(RecorderStateError):
        with recorder.step("orphan"):
            pass


def test_no_document_inside_a_step():
    recorder = StateRecorder()
    with recorder.document("doc"):
        with recorder.step("step"):
            with pytest.raises(RecorderStateError):
                with recorder.document("nested"):
                    pass


def test_no_overlapping_steps():
    recorder = StateRecorder()
    with recorder.document("doc"):
        with recorder.step("one"):
            with pytest.raises(RecorderStateError):
                with recorder.step("two"):
                    pass


@pytest.mark.parametrize("result", [
    Result.warn("no step open"),
    Result.error("no step open"),
    Result.fatal("no step open"),
    Result.skip("no step open"),
])
def test_errors_need_an_open_step(result):
    recorder = StateRecorder()
    with recorder.document("doc") as doc:
        with pytest.raises(RecorderStateError):
            recorder.update(result)
        recorder.update(Result.info("plain messages are fine"))

    assert [r.message for r in doc.results] == ["plain messages are fine"]


def test_messages_go_to_the_innermost_scope():
    recorder = StateRecorder()
    with recorder.document("doc") as doc:
        recorder.update(Result.info("document level"))
        with recorder.step("step") as step:
            recorder.update(Result.warn("step level"))

    assert [r.message for r in doc.results] == ["document level"]
    assert [r.message for r in step.results] == ["step level"]
    assert step.end is not None


def test_warnings_do_not_fail():
    recorder = StateRecorder()
    with recorder.document("doc"):
        with recorder.step("step"):
            recorder.update(Result.warn("careful"))

    assert recorder.should_continue()
    assert not recorder.failed()


def test_fatal_stops_only_the_current_document():
    recorder = StateRecorder()
    with recorder.document("first"):
        with recorder.step("step"):
            recorder.update(Result.fatal("boom"))
        assert not recorder.should_continue()

    with recorder.document("second"):
        assert recorder.should_continue()

    # Between documents, every document counts.
    assert not recorder.should_continue()
    assert recorder.failed()


def test_skip_stops_without_failing():
    recorder = StateRecorder()
    with recorder.document("doc"):
        with recorder.step("step"):
            recorder.update(Result.skip("not supported here"))
        assert not recorder.should_continue()

    assert not recorder.failed()


def test_errors_fail_but_continue():
    recorder = StateRecorder()
    with recorder.document("doc"):
        with recorder.step("step"):
            recorder.update(Result.error("wrong"))
        assert recorder.should_continue()

    assert recorder.failed()


def test_stacked_recorders_see_every_call():
    state = StateRecorder()
    out = io.StringIO()
    recorder = stack_recorders(state, TapWriter(out))

    with recorder.document("doc"):
        with recorder.step("step"):
            recorder.update(Result.fatal("boom"))
        assert not recorder.should_continue()

    assert recorder.failed()
    assert "not ok 1 - step" in out.getvalue()


def tree_output(run):
    buf = io.StringIO()
    console = Console(file=buf, width=200, color_system=None, highlight=False)
    writer = TreeWriter(console=console, clock=lambda: datetime(2024, 1, 1, 12, 30, 45, 123456))
    run(writer)
    return buf.getvalue()


def test_tree_writer_passing_document():
    def run(writer):
        with writer.document("demo.yaml"):
            with writer.step("first"):
                writer.update(Result.info("hello"))
            with writer.step("second"):
                pass

    lines = tree_output(run).splitlines()

    assert lines[0] == "12:30:45.1234  Running: demo.yaml"
    assert lines[1] == "12:30:45.1234  ├─ Step 1: first"
    assert lines[2] == "12:30:45.1234  │ ├─ hello"
    assert lines[3] == "12:30:45.1234  │ └─ Pass"
    assert lines[-1] == "12:30:45.1234  └─ Pass with 2 steps OK"


def test_tree_writer_counts_errors():
    def run(writer):
        with writer.document("demo.yaml"):
            with writer.step("check"):
                writer.update(Result.error("first\nsecond line"), Result.fatal("[bold]x[/bold]"))

    out = tree_output(run)

    assert "├─ ERROR: first" in out
    assert "│ │  second line" in out
    assert "FATAL: [bold]x[/bold]" in out
    assert "└─ Failed with 2 errors" in out
    assert out.rstrip().endswith("└─ Failed with 2 errors")


def test_tap_writer_output():
    out = io.StringIO()
    writer = TapWriter(out)

    with writer.document("demo.yaml"):
        with writer.step("apply"):
            writer.update(Result.info("applied"))
        with writer.step("check"):
            writer.update(Result.error("bad value"))
        with writer.step("skipped"):
            writer.update(Result.skip("later"))

    lines = out.getvalue().splitlines()

    assert lines[0] == "TAP version 13"
    assert lines[1] == "# demo.yaml"
    assert "# applied" in lines
    assert "ok 1 - apply" in lines
    assert "# Error - bad value" in lines
    assert "not ok 2 - check" in lines
    assert "ok 3 - skipped # SKIP" in lines
    assert lines[-1] == "1..3"

    diagnostics = lines[lines.index("not ok 2 - check") + 1:]
    assert diagnostics[0] == "  ---"
    assert "    message: bad value" in diagnostics or "  - message: bad value" in diagnostics
    assert "  ..." in diagnostics


def test_tap_writer_separates_documents():
    out = io.StringIO()
    writer = TapWriter(out)

    for name in ["a", "b"]:
        with writer.document(name):
            with writer.step("only"):
                pass

    assert out.getvalue().count("TAP version 13") == 2
    assert "1..1\n\nTAP version 13\n" in out.getvalue()
