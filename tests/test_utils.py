import pytest

from judgebox.core.utils import cpu_rlimit_seconds, infer_language, new_run_id, parse_size


@pytest.mark.parametrize("value,expected", [
    (1024, 1024),
    ("512", 512),
    ("64k", 64 * 1024),
    ("256m", 256 * 1024 ** 2),
    ("256MiB", 256 * 1024 ** 2),
    ("1g", 1024 ** 3),
    ("1.5G", int(1.5 * 1024 ** 3)),
])
def test_parse_size(value, expected):
    assert parse_size(value) == expected


@pytest.mark.parametrize("value", ["lots", "-1", "12q", True, -5])
def test_parse_size_rejects(value):
    with pytest.raises(ValueError):
        parse_size(value)


def test_infer_language():
    assert infer_language("solution.cpp") == "cpp"
    assert infer_language("Main.JAVA") == "java"
    assert infer_language("x.c") == "c"
    assert infer_language("notes.txt") is None


def test_cpu_rlimit_rounds_up():
    assert cpu_rlimit_seconds(2) == 2
    assert cpu_rlimit_seconds(2.1) == 3
    assert cpu_rlimit_seconds(0.2) == 1


def test_run_ids_are_distinct():
    assert len({new_run_id() for _ in range(50)}) == 50
