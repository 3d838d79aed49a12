import os
import stat

from trustcore.service.fs import atomic_write, read_private_text


def test_atomic_write_replaces_and_applies_mode(tmp_path):
    target = tmp_path / "nested" / "secret"
    atomic_write(target, b"first")
    atomic_write(target, b"second-value", mode=0o600)

    assert target.read_bytes() == b"second-value"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    assert [p.name for p in target.parent.iterdir()] == ["secret"]


def test_read_private_text_ignores_missing_and_symlinks(tmp_path):
    real = tmp_path / "real"
    real.write_text("  value \n")
    link = tmp_path / "link"
    link.symlink_to(real)

    assert read_private_text(real) == "value"
    assert read_private_text(link) is None
    assert read_private_text(tmp_path / "absent") is None
