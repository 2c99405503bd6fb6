from judgebox.executor import cgroups


def test_parse_flat_keyed_skips_junk():
    assert cgroups.parse_flat_keyed("oom 1\noom_kill 2\nbogus\nmax x\n") == {"oom": 1, "oom_kill": 2}


def test_oom_kills_counter():
    assert cgroups.oom_kills({"memory.events": "low 0\noom 3\noom_kill 2"}) == 2
    assert cgroups.oom_kills({}) == 0


def test_read_metrics(tmp_path):
    leaf = tmp_path / "leaf"
    leaf.mkdir()
    (leaf / "memory.events").write_text("oom_kill 1\n")
    (leaf / "memory.peak").write_text("4096\n")
    m = cgroups.read_metrics(leaf)
    assert m == {"memory.events": "oom_kill 1", "memory.peak": "4096"}
    assert cgroups.oom_kills(m) == 1
