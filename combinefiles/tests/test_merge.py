import logging
import os
import re
import shutil

import pytest

from combinefiles.core import merge as merge_mod
from combinefiles.core.merge import FileMerger, RunState, TruncationPolicy
from combinefiles.core.sinks import FileSink
from combinefiles.core.tokens import count_tokens

FOOTER_RE = re.compile(r"^### FILE TRONCATO: (\d+|\?)/(\d+|\?)  Righe (\d+) ###$")


def lines_of(sink):
    return sink.stream.getvalue().split("\n")


def header(rel):
    return f"### Contenuto di {rel} ###"


def content_tokens(lines):
    return sum(count_tokens(l) for l in lines if not l.startswith("###"))


@pytest.fixture
def abc_files(write_tokens):
    # 10, 5 and 20 tokens
    return [
        write_tokens("a.txt", [5, 5]),
        write_tokens("b.txt", [5]),
        write_tokens("c.txt", [5, 5, 5, 5]),
    ]


def test_exclude_completely_skips_overflowing_file(console, src, abc_files):
    merger = FileMerger(console, TruncationPolicy.EXCLUDE_COMPLETELY, max_total_tokens=20, base_dir=str(src))
    a, b, c = abc_files

    assert merger.merge_file(a) is True
    assert merger.merge_file(b) is True
    assert merger.merge_file(c) is False
    assert merger.state.budget_violated
    assert merger.state.tokens_used == 15

    out = lines_of(console)
    assert header("a.txt") in out
    assert header("b.txt") in out
    assert header("c.txt") not in out
    assert not any(FOOTER_RE.match(l) for l in out)


def test_exclude_completely_rejects_everything_after_violation(console, src, abc_files, write_tokens):
    small = write_tokens("d.txt", [1])
    merger = FileMerger(console, "exclude", max_total_tokens=20, base_dir=str(src))
    for p in abc_files:
        merger.merge_file(p)
    before = console.stream.getvalue()

    # Would fit, but the run is already over.
    assert merger.merge_file(small) is False
    assert console.stream.getvalue() == before


def test_include_partial_truncates_one_file_with_footer(console, src, abc_files, write_tokens):
    later = write_tokens("d.txt", [1])
    merger = FileMerger(console, TruncationPolicy.INCLUDE_PARTIAL, max_total_tokens=20, base_dir=str(src))
    a, b, c = abc_files

    assert merger.merge_file(a)
    assert merger.merge_file(b)
    assert merger.merge_file(c)
    assert merger.state.budget_violated
    assert merger.merge_file(later) is True

    out = lines_of(console)
    start = out.index(header("c.txt"))
    first_line = out[start + 1]
    assert count_tokens(first_line) == 5
    footer = FOOTER_RE.match(out[start + 2])
    assert footer, out[start + 2]
    assert int(footer.group(1)) == len(first_line.encode("utf-8")) + len(os.linesep)
    assert int(footer.group(2)) == os.path.getsize(c)
    assert footer.group(3) == "1"
    assert out[start + 3] == ""

    assert header("d.txt") not in out
    assert merger.state.tokens_used == 20
    assert merger.state.files_truncated == 1
    assert later in merger.state.budget_skips


def test_include_partial_budget_conservation(console, src, write_tokens):
    paths = [write_tokens(f"f{i}.txt", [3, 4, 2, 6]) for i in range(5)]
    merger = FileMerger(console, "partial", max_total_tokens=37, base_dir=str(src))
    for p in paths:
        merger.merge_file(p)

    assert content_tokens(lines_of(console)) <= 37
    assert merger.state.tokens_used <= 37
    assert sum(1 for l in lines_of(console) if FOOTER_RE.match(l)) == 1


def test_partial_with_exhausted_budget_writes_no_header(console, src, write_tokens):
    exact = write_tokens("exact.txt", [4])
    nxt = write_tokens("next.txt", [1])
    merger = FileMerger(console, "partial", max_total_tokens=4, base_dir=str(src))

    assert merger.merge_file(exact)
    assert not merger.state.budget_violated
    assert merger.merge_file(nxt)

    out = lines_of(console)
    assert header("next.txt") not in out
    assert merger.state.budget_violated


def test_duplicate_content_written_once(console, src, write_tokens, caplog):
    first = write_tokens("orig.txt", [3, 3])
    copy = os.path.join(str(src), "copy.txt")
    shutil.copyfile(first, copy)

    merger = FileMerger(console, "partial", base_dir=str(src))
    with caplog.at_level(logging.DEBUG, logger="combinefiles"):
        assert merger.merge_file(first)
        assert merger.merge_file(copy)

    out = lines_of(console)
    assert header("orig.txt") in out
    assert header("copy.txt") not in out
    assert merger.state.duplicates == [copy]
    assert merger.state.tokens_used == 6
    assert any("duplicate" in r.getMessage() for r in caplog.records if r.levelno == logging.DEBUG)
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_duplicate_is_idempotent_across_repeated_calls(console, src, write_tokens):
    p = write_tokens("same.txt", [2])
    merger = FileMerger(console, "partial", base_dir=str(src))
    for _ in range(3):
        merger.merge_file(p)
    assert lines_of(console).count(header("same.txt")) == 1


def test_line_cap_writes_footer_without_tripping_budget(console, src, write_tokens):
    long_file = write_tokens("long.txt", [1, 1, 1, 1])
    other = write_tokens("other.txt", [1])
    merger = FileMerger(console, "partial", max_total_tokens=100, max_lines_per_file=2, base_dir=str(src))

    merger.merge_file(long_file)
    merger.merge_file(other)

    out = lines_of(console)
    start = out.index(header("long.txt"))
    footer = FOOTER_RE.match(out[start + 3])
    assert footer and footer.group(3) == "2"
    assert header("other.txt") in out
    assert not merger.state.budget_violated


def test_line_cap_on_exact_length_is_not_truncation(console, src, write_tokens):
    p = write_tokens("two.txt", [1, 1])
    merger = FileMerger(console, "partial", max_lines_per_file=2, base_dir=str(src))
    merger.merge_file(p)
    assert not any(FOOTER_RE.match(l) for l in lines_of(console))
    assert merger.last_file.emitted_lines == 2
    assert not merger.last_file.was_truncated


def test_blank_lines_never_cause_truncation(console, src, write_tokens):
    p = write_tokens("gaps.txt", [2, 0, 0, 2, 0])
    merger = FileMerger(console, "partial", max_total_tokens=4, base_dir=str(src))
    merger.merge_file(p)

    assert not merger.state.budget_violated
    assert merger.last_file.emitted_lines == 5


def test_per_file_token_ceiling_does_not_stop_the_run(console, src, write_tokens):
    big = write_tokens("big.txt", [2, 2, 2])
    small = write_tokens("small.txt", [1])
    merger = FileMerger(console, "partial", max_tokens_per_file=3, base_dir=str(src))

    merger.merge_file(big)
    merger.merge_file(small)

    out = lines_of(console)
    assert any(FOOTER_RE.match(l) for l in out)
    assert header("small.txt") in out
    assert not merger.state.budget_violated


def test_exclude_with_per_file_ceiling_skips_only_that_file(console, src, write_tokens):
    big = write_tokens("big.txt", [2, 2, 2])
    small = write_tokens("small.txt", [1])
    merger = FileMerger(console, "exclude", max_tokens_per_file=3, base_dir=str(src))

    assert merger.merge_file(big) is True
    assert merger.merge_file(small) is True

    out = lines_of(console)
    assert header("big.txt") not in out
    assert header("small.txt") in out
    assert merger.state.budget_skips == [big]


def test_exclude_budget_overflow_wins_over_smaller_ceiling(console, src, write_tokens):
    big = write_tokens("big.txt", [15, 15, 15])
    small = write_tokens("small.txt", [5])
    merger = FileMerger(console, "exclude", max_total_tokens=40, max_tokens_per_file=30, base_dir=str(src))

    assert merger.merge_file(big) is False
    assert merger.merge_file(small) is False

    out = lines_of(console)
    assert header("big.txt") not in out
    assert header("small.txt") not in out
    assert merger.state.budget_violated
    assert merger.state.tokens_used == 0


def test_exclude_ceiling_skip_keeps_run_going_when_budget_has_room(console, src, write_tokens):
    big = write_tokens("big.txt", [15, 15])
    small = write_tokens("small.txt", [5])
    merger = FileMerger(console, "exclude", max_total_tokens=40, max_tokens_per_file=20, base_dir=str(src))

    assert merger.merge_file(big) is True
    assert merger.merge_file(small) is True

    assert header("small.txt") in lines_of(console)
    assert not merger.state.budget_violated
    assert merger.state.budget_skips == [big]


def test_call_cap_trips_budget(console, src, write_tokens):
    p = write_tokens("p.txt", [2, 2])
    merger = FileMerger(console, "partial", base_dir=str(src))
    merger.merge_file(p, per_file_token_cap=3)
    assert merger.state.budget_violated


def test_list_only_writes_plain_headers(console, src, abc_files):
    merger = FileMerger(console, "exclude", max_total_tokens=1, list_only=True, base_dir=str(src))
    for p in abc_files:
        assert merger.merge_file(p)

    assert lines_of(console)[:3] == ["### a.txt ###", "### b.txt ###", "### c.txt ###"]
    assert merger.state.tokens_used == 0
    assert not merger.state.budget_violated


def test_header_is_relative_to_base_dir(console, src, write_tokens):
    p = write_tokens(os.path.join("pkg", "mod.py"), [1])
    merger = FileMerger(console, "partial", base_dir=str(src))
    merger.merge_file(p)
    assert lines_of(console)[0] == header(os.path.join("pkg", "mod.py"))


def test_hash_failure_is_an_error_skip(console, src, write_tokens, monkeypatch, caplog):
    p = write_tokens("x.txt", [1])

    def boom(path):
        raise PermissionError("denied")

    monkeypatch.setattr(merge_mod, "compute_sha256", boom)
    merger = FileMerger(console, "partial", base_dir=str(src))
    with caplog.at_level(logging.WARNING, logger="combinefiles"):
        assert merger.merge_file(p) is True

    assert console.stream.getvalue() == ""
    assert merger.state.error_skips and merger.state.error_skips[0][0] == p
    assert any("skip-error" in r.getMessage() for r in caplog.records)


def test_unreadable_file_is_skipped(console, src, write_tokens, monkeypatch):
    p = write_tokens("locked.txt", [1])
    ok = write_tokens("ok.txt", [1])
    real_open = open

    def fake_open(path, *args, **kwargs):
        if str(path) == p and "b" not in (args[0] if args else kwargs.get("mode", "r")):
            raise PermissionError("denied")
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr("builtins.open", fake_open)
    merger = FileMerger(console, "partial", base_dir=str(src))
    assert merger.merge_file(p) is True
    assert merger.merge_file(ok) is True

    out = lines_of(console)
    assert header("locked.txt") not in out
    assert header("ok.txt") in out
    assert len(merger.state.error_skips) == 1


def test_shared_run_state(console, src, write_tokens):
    p = write_tokens("p.txt", [2])
    state = RunState()
    FileMerger(console, "partial", base_dir=str(src), state=state).merge_file(p)
    second = FileMerger(console, "partial", base_dir=str(src), state=state)
    second.merge_file(p)
    assert state.files_merged == 1
    assert state.duplicates == [p]


def test_file_sink_closed_by_context_manager(tmp_path, src, write_tokens):
    p = write_tokens("p.txt", [2])
    out = tmp_path / "out.txt"
    sink = FileSink(str(out))
    with FileMerger(sink, "partial", base_dir=str(src)) as merger:
        merger.merge_file(p)
    assert sink.closed
    text = out.read_text(encoding="utf-8")
    assert text.splitlines()[0] == header("p.txt")
    assert text.endswith("\n\n")


def test_paginate_policy_is_rejected(console):
    with pytest.raises(ValueError):
        FileMerger(console, TruncationPolicy.PAGINATE_OUTPUT)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("exclude", TruncationPolicy.EXCLUDE_COMPLETELY),
        ("ExcludeCompletely", TruncationPolicy.EXCLUDE_COMPLETELY),
        ("include_partial", TruncationPolicy.INCLUDE_PARTIAL),
        ("PAGINATE", TruncationPolicy.PAGINATE_OUTPUT),
    ],
)
def test_policy_parse(raw, expected):
    assert TruncationPolicy.parse(raw) is expected


def test_policy_parse_unknown():
    with pytest.raises(ValueError):
        TruncationPolicy.parse("truncate")
