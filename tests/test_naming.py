import sys
from pathlib import Path

import pytest

project_root = str(Path(__file__).resolve().parents[1])
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from filedrop import naming  # noqa: E402


@pytest.mark.parametrize(
    "requested, expected",
    [
        ("../../etc/passwd", "passwd"),
        ("/var/tmp/report.pdf", "report.pdf"),
        ("..\\..\\windows\\system.ini", "system.ini"),
        ("dir/sub\\mixed/name.txt", "name.txt"),
        ("héllo wörld.txt", "h_llo_w_rld.txt"),
        ("weird*name?.tar.gz", "weird_name_.tar.gz"),
    ],
)
def test_sanitize_strips_paths_and_unsafe_characters(requested, expected):
    result = naming.sanitize_filename(requested)
    assert result == expected
    assert "/" not in result and "\\" not in result


@pytest.mark.parametrize("requested", ["", None, ".", "..", "../", "/", "..\\.."])
def test_sanitize_never_returns_empty_or_dot_names(requested):
    assert naming.sanitize_filename(requested) == naming.PLACEHOLDER_NAME


def test_extension_for_ignores_parameters_and_case():
    assert naming.extension_for("text/plain; charset=utf-8") == ".txt"
    assert naming.extension_for("IMAGE/PNG") == ".png"
    assert naming.extension_for("application/x-unknown") == ""
    assert naming.extension_for(None) == ""


def test_resolve_appends_extension_from_content_type(tmp_path):
    assert naming.resolve_filename(str(tmp_path), "report", "application/pdf") == "report.pdf"
    assert naming.resolve_filename(str(tmp_path), "report", "application/x-unknown") == "report"
    # an explicit extension always wins over the hint
    assert naming.resolve_filename(str(tmp_path), "notes.md", "text/plain") == "notes.md"


def test_resolve_picks_lowest_free_suffix(tmp_path):
    for name in ["a.png", "a(1).png", "a(2).png"]:
        (tmp_path / name).write_bytes(b"x")
    assert naming.resolve_filename(str(tmp_path), "a.png", "image/png") == "a(3).png"

    (tmp_path / "a(1).png").unlink()
    assert naming.resolve_filename(str(tmp_path), "a.png") == "a(1).png"


def test_resolve_suffixes_names_without_extension(tmp_path):
    (tmp_path / "README").write_bytes(b"x")
    assert naming.resolve_filename(str(tmp_path), "README") == "README(1)"


def test_resolve_confines_traversal_to_upload_dir(tmp_path):
    result = naming.resolve_filename(str(tmp_path), "../../../tmp/evil.sh", None)
    assert result == "evil.sh"
    assert (tmp_path / result).parent == tmp_path


def test_resolve_never_raises_for_odd_input(tmp_path):
    for requested in ["", "\x00\x01", "💾", "a" * 300, "con"]:
        result = naming.resolve_filename(str(tmp_path), requested, "text/plain")
        assert result
        assert "/" not in result
        assert len(result) <= naming.MAX_NAME_LENGTH
