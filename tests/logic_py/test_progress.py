from __future__ import annotations

import io
import threading

from mint.progress import ProgressWriter, quiet


def test_lines_and_details():
    stream = io.StringIO()
    writer = ProgressWriter(stream=stream)

    writer.line("Launching...")
    writer.detail("hidden")

    assert stream.getvalue() == "Launching...\n"


def test_verbose_shows_details():
    stream = io.StringIO()
    writer = ProgressWriter(verbose=True, stream=stream)

    writer.detail("Attaching vol-1")

    assert stream.getvalue() == "Attaching vol-1\n"


def test_quiet_writer_prints_nothing(capsys):
    writer = quiet()

    writer.line("x")
    writer.detail("y")

    assert capsys.readouterr().out == ""


def test_concurrent_writers_do_not_interleave():
    stream = io.StringIO()
    writer = ProgressWriter(verbose=True, stream=stream)

    def emit(tag: str) -> None:
        for index in range(200):
            writer.line(f"{tag}-{index}-" + tag * 40)

    threads = [threading.Thread(target=emit, args=(tag,)) for tag in "abcd"]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = stream.getvalue().splitlines()
    assert len(lines) == 800
    for line in lines:
        tag = line[0]
        assert line.endswith(tag * 40)
