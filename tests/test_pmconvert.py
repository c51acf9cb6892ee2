import os
import types
import pytest
import pfc_names
import pmconvert
from pfc_builder import PAGE_TABLE_HEADER, names, page_entry, pages, write

TIFF = b"DMFILE    II*\x00\x08\x00\x00\x00"
JPEG = b"\x00\x00\xff\xd8\xff\xe0JFIF"

@pytest.fixture
def cabinet(tmp_path):
    root = tmp_path / "Default"
    p = lambda *parts: os.path.join(root, *parts)

    write(p("_PFC._PS"), names(("00000001", b"Personal"), ("00000005", b"___system_drawer_1___")))

    # Personal/Taxes, two scanned pages and a native pdf
    write(p("00000001", "_PFC._PS"), names(("00000002", b"Taxes.2013"), ("00000006", b"Receipt")))
    write(p("00000001", "00000002", "_PFC._PS"), pages(("00000003", 0), ("00000004", 1)))
    write(p("00000001", "00000002", "00000003"), TIFF)
    write(p("00000001", "00000002", "00000003.TXT"), b"first page")
    write(p("00000001", "00000002", "00000003.THM"), b"thumb")
    write(p("00000001", "00000002", "00000004"), JPEG)
    write(p("00000001", "00000002", "00000004.TXT"), b"second page")
    write(p("00000001", "00000002", "0000000A"), b"no image here")
    write(p("00000001", "00000006", "NATIVE.PDF"), b"%PDF-1.4")
    write(p("00000001", "00000006", "I", "logo.gif"), b"GIF89a")

    # system drawer holding the Inbox
    write(p("00000005", "_PFC._PS"), names(("00000007", b"Inbox")))
    write(p("00000005", "00000007", "_PFC._PS"), pages(("00000008", 0)))
    write(p("00000005", "00000007", "00000008"), JPEG)

    write(p("ICONS", "00000009"), TIFF)

    return root

def test_list_directories_depth_first(cabinet):
    dirs = [os.path.relpath(d, cabinet) for d in pmconvert.list_directories(str(cabinet))]

    assert dirs[:4] == ["00000001", os.path.join("00000001", "00000002"), os.path.join("00000001", "00000006"), os.path.join("00000001", "00000006", "I")]
    assert "ICONS" in dirs

def test_build_table(cabinet):
    table = pmconvert.build_table(str(cabinet))

    assert isinstance(table, types.MappingProxyType)
    assert table["00000001"] == "Personal"
    assert table["00000002"] == "Taxes_2013"
    assert table["00000004"] == "Page00002"
    assert table["00000007"] == "Inbox"
    assert table["00000008"] == "Page00001"

    with pytest.raises(TypeError):
        table["00000001"] = "changed"

def test_human_dirname(cabinet, tmp_path):
    conv = pmconvert.Converter(str(cabinet), str(tmp_path / "out"), pmconvert.build_table(str(cabinet)))

    assert conv.human_dirname(str(cabinet)) == str(tmp_path / "out")
    assert conv.human_dirname(os.path.join(cabinet, "00000001", "00000002")) == str(tmp_path / "out" / "Personal" / "Taxes_2013")
    assert conv.human_dirname(os.path.join(cabinet, "00000005", "00000007")) == str(tmp_path / "out" / "Inbox")
    assert conv.human_dirname(os.path.join(cabinet, "0000FFFF")) == str(tmp_path / "out" / "Default")

def test_convert(cabinet, tmp_path):
    out = tmp_path / "out"
    stats = pmconvert.convert(str(cabinet), str(out))

    taxes = out / "Personal" / "Taxes_2013"
    assert (taxes / "Page00001.tiff").read_bytes() == b"II*\x00\x08\x00\x00\x00"
    assert (taxes / "OCR" / "Page00001.txt").read_bytes() == b"first page"
    assert (taxes / "Page00002.jpg").read_bytes() == b"\xff\xd8\xff\xe0JFIF"
    assert (taxes / "Page00002.txt").read_bytes() == b"second page"
    assert (out / "Personal" / "Receipt" / "Receipt.PDF").read_bytes() == b"%PDF-1.4"
    assert (out / "Personal" / "Receipt" / "I" / "logo.gif").read_bytes() == b"GIF89a"
    assert (out / "Inbox" / "Page00001.jpg").exists()
    assert not (out / "ICONS").exists()
    assert not (out / "Default").exists()

    assert stats["images"] == 3
    assert stats["no_magic"] == 1
    assert stats["natives"] == 1
    assert stats["html_images"] == 1
    assert stats["skipped"] == 2
    assert stats["errors"] == 0

    log = (out / pmconvert.LOG_NAME).read_text()
    assert log.startswith(pmconvert.LOG_BANNER)
    assert "00000003 is page 00001" in log
    assert "0000000A" in log

def test_unknown_record_stops_before_second_pass(cabinet, tmp_path):
    bad = os.path.join(cabinet, "00000001", "00000002", "_PFC._PS")
    with open(bad, "ab") as f:
        f.write(b"\x99" + b"\x00" * 31 + page_entry("0000000B", 2))

    out = tmp_path / "out"
    with pytest.raises(pfc_names.FormatViolation):
        pmconvert.convert(str(cabinet), str(out))

    assert sorted(os.listdir(out)) == [pmconvert.LOG_NAME]
    assert "Unknown type - stopping" in (out / pmconvert.LOG_NAME).read_text()

def test_unreadable_leaf_counted(cabinet, tmp_path, monkeypatch):
    real = pmconvert.pm_image.extract_file

    def flaky(path, table, dest_dir):
        if path.endswith("00000004"):
            raise PermissionError(path)

        return real(path, table, dest_dir)

    monkeypatch.setattr(pmconvert.pm_image, "extract_file", flaky)
    stats = pmconvert.convert(str(cabinet), str(tmp_path / "out"))

    assert stats["errors"] == 1
    assert stats["images"] == 2

class TestMain:
    def test_usage(self, capsys):
        assert pmconvert.main([]) == 2
        assert "usage" in capsys.readouterr().out

    def test_source_without_metadata(self, tmp_path, capsys):
        assert pmconvert.main([str(tmp_path), str(tmp_path / "out")]) == 1
        assert "does not contain _PFC._PS" in capsys.readouterr().out

    def test_declined(self, cabinet, tmp_path, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda: "q")

        assert pmconvert.main([str(cabinet), str(tmp_path / "out")]) == 1
        assert not (tmp_path / "out").exists()

    def test_confirmed(self, cabinet, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr("builtins.input", lambda: " ok ")

        assert pmconvert.main([str(cabinet), str(tmp_path / "out")]) == 0
        assert "Images Converted   = 3" in capsys.readouterr().out

    def test_yes_with_encoding(self, cabinet, tmp_path):
        assert pmconvert.main([str(cabinet), str(tmp_path / "out"), "cp1252", "--yes"]) == 0
        assert (tmp_path / "out" / "Personal" / "Taxes_2013" / "Page00001.tiff").exists()

    def test_format_violation(self, cabinet, tmp_path, capsys):
        with open(os.path.join(cabinet, "_PFC._PS"), "wb") as f:
            f.write(names(("00000001", b"Personal")) + PAGE_TABLE_HEADER + b"\x42" + b"\x00" * 31)

        assert pmconvert.main([str(cabinet), str(tmp_path / "out"), "--yes"]) == 1
        assert "Unknown type - stopping" in capsys.readouterr().out
