"""End-to-end behaviour of the control-file interpreter."""

import logging
import zipfile

import pytest
from lxml import etree

from veocreate.commands import CommandKind
from veocreate.core import VERS_NAMESPACE
from veocreate.errors import ConfigError, VEOFatal
from veocreate.interpreter import _HANDLERS, Session, State, build_veos, read_control_file
from veocreate.templates import TemplateLibrary

from conftest import PFX_PASSWORD

NS = {"vers": VERS_NAMESPACE}


@pytest.fixture
def make_session(output_dir, support_dir, control_dir, signer, template_dir):
    def _make(*, signers=None, templates=True, **kw) -> Session:
        return Session(
            output_dir=output_dir,
            support_dir=support_dir,
            base_dir=control_dir,
            templates=TemplateLibrary(template_dir) if templates else None,
            signers=[signer] if signers is None else signers,
            **kw,
        )
    return _make


def _content(zip_path, name):
    with zipfile.ZipFile(zip_path) as zf:
        return etree.fromstring(zf.read(f"{name}.veo/VEOContent.xml"))


def _history(zip_path, name):
    with zipfile.ZipFile(zip_path) as zf:
        return etree.fromstring(zf.read(f"{name}.veo/VEOHistory.xml"))


def _names(zip_path):
    with zipfile.ZipFile(zip_path) as zf:
        return set(zf.namelist())


def test_every_command_kind_has_a_handler():
    assert set(_HANDLERS) == set(CommandKind)


def test_two_veos_end_to_end(make_session, output_dir):
    lines = [
        "! build two VEOs",
        "HASH\tSHA-512",
        "BV\tfirst",
        "AC\tS-37-6",
        "IO\tRecord\t0",
        "MP\trecord\tFirst title\tJo Bloggs",
        "IP\tMinutes\tS-37-6/minutes.txt\tS-37-6/agenda.txt",
        "IO\tAttachment\t1",
        "XML-MP\thttp://example.org/attach",
        "ME\ttitle\tAttachment",
        "IP\treport.txt",
        "E\t2020-01-01T00:00:00+10:00\tCreated\tTester\tFirst version\t$$\tNone",
        "BV\tsecond",
        "IO\tRecord",
        "AGLS-MP\thttp://example.org/record/2",
        "ME\tdcterms:title\tSecond",
        "IP\timage.png",
        "END",
        "BV\tignored",
    ]
    session = make_session()
    summary = session.run(lines)

    assert summary.sealed == [output_dir / "first.veo.zip", output_dir / "second.veo.zip"]
    assert summary.abandoned == []
    assert summary.errors == 0
    assert session.hash_algorithm == "SHA-512"
    assert sorted(p.name for p in output_dir.iterdir()) == ["first.veo.zip", "second.veo.zip"]

    first = output_dir / "first.veo.zip"
    assert {
        "first.veo/S-37-6/minutes.txt",
        "first.veo/S-37-6/agenda.txt",
        "first.veo/report.txt",
        "first.veo/VEOReadme.txt",
        "first.veo/VEOContentSignature1.xml",
        "first.veo/VEOHistorySignature1.xml",
    } <= _names(first)

    content = _content(first, "first")
    assert content.findtext("vers:HashFunctionAlgorithm", namespaces=NS) == "SHA-512"
    ios = content.findall("vers:InformationObject", namespaces=NS)
    assert [io.findtext("vers:InformationObjectDepth", namespaces=NS) for io in ios] == ["0", "1"]
    assert ios[0].findtext("vers:MetadataPackage/record/title", namespaces=NS) == "First title"
    ip = ios[0].find("vers:InformationPiece", namespaces=NS)
    assert ip.findtext("vers:Label", namespaces=NS) == "Minutes"
    assert [p.text for p in ip.findall("vers:ContentFile/vers:PathName", namespaces=NS)] == [
        "S-37-6/minutes.txt",
        "S-37-6/agenda.txt",
    ]
    # first argument names an existing file, so the piece has no label
    attachment_ip = ios[1].find("vers:InformationPiece", namespaces=NS)
    assert attachment_ip.find("vers:Label", namespaces=NS) is None
    assert attachment_ip.findtext("vers:ContentFile/vers:PathName", namespaces=NS) == "report.txt"

    event = _history(first, "first").find("vers:Event", namespaces=NS)
    assert event.findtext("vers:EventType", namespaces=NS) == "Created"
    assert event.findtext("vers:Description", namespaces=NS) == "First version"
    assert event.findtext("vers:Error", namespaces=NS) == "None"

    second = _content(output_dir / "second.veo.zip", "second")
    assert second.findtext(
        "vers:InformationObject/vers:MetadataPackage/{http://www.w3.org/1999/02/22-rdf-syntax-ns#}RDF/"
        "{http://www.w3.org/1999/02/22-rdf-syntax-ns#}Description/{http://purl.org/dc/terms/}title",
        namespaces=NS,
    ) == "Second"


def test_unmatched_end_element_still_seals(make_session, output_dir):
    summary = make_session().run([
        "BV\tloose",
        "IO\tRecord",
        "XML-MP\thttp://example.org/s",
        "EME\tnever-opened",
        "IP\treport.txt",
    ])
    assert summary.sealed == [output_dir / "loose.veo.zip"]
    assert summary.errors == 0


def test_second_package_commits_first(make_session, output_dir):
    make_session().run([
        "BV\ttwo-mps",
        "IO\tRecord",
        "XML-MP\thttp://example.org/a",
        "ME\ttitle\tA",
        "XML-MP\thttp://example.org/b",
        "ME\ttitle\tB",
        "IP\treport.txt",
    ])
    content = _content(output_dir / "two-mps.veo.zip", "two-mps")
    mps = content.findall("vers:InformationObject/vers:MetadataPackage", namespaces=NS)
    assert [m.findtext("vers:MetadataSchemaIdentifier", namespaces=NS) for m in mps] == [
        "http://example.org/a",
        "http://example.org/b",
    ]
    assert [m.findtext("title") for m in mps] == ["A", "B"]


def test_no_signer_is_fatal_before_any_output(make_session, output_dir):
    session = make_session(signers=[])
    with pytest.raises(VEOFatal, match="without specifying a signer"):
        session.run(["BV\tunsigned", "IO\tRecord"])
    assert list(output_dir.iterdir()) == []


@pytest.mark.parametrize("late", ["HASH\tSHA-1", f"PFX\tanything.pfx\t{PFX_PASSWORD}"])
def test_preamble_commands_after_first_veo_are_fatal(make_session, output_dir, late):
    session = make_session()
    with pytest.raises(ConfigError, match="before the first VEO"):
        session.run(["BV\tfirst", "IO\tRecord", late, "IP\treport.txt"])
    # the VEO under construction is abandoned
    assert list(output_dir.iterdir()) == []


def test_fatal_error_leaves_sealed_veos(make_session, output_dir):
    session = make_session()
    with pytest.raises(VEOFatal):
        session.run([
            "BV\tkept",
            "IO\tRecord",
            "IP\treport.txt",
            "BV\tlost",
            "HASH\tSHA-1",
        ])
    assert sorted(p.name for p in output_dir.iterdir()) == ["kept.veo.zip"]


def test_bad_depth_abandons_only_that_veo(make_session, output_dir):
    summary = make_session().run([
        "BV\ta",
        "IO\tRecord",
        "IP\treport.txt",
        "BV\tb",
        "IO\tRecord\tabc",
        "IP\treport.txt",
        "BV\tc",
        "IO\tRecord",
        "IP\timage.png",
    ])
    assert summary.sealed == [output_dir / "a.veo.zip", output_dir / "c.veo.zip"]
    assert summary.abandoned == ["b"]
    assert summary.errors == 1
    assert sorted(p.name for p in output_dir.iterdir()) == ["a.veo.zip", "c.veo.zip"]


def test_failure_is_logged_with_line_and_command(make_session, caplog):
    caplog.set_level(logging.WARNING, logger="veocreate")
    make_session().run(["BV\tb", "IO\tRecord\t-1"])
    records = [r for r in caplog.records if r.levelno == logging.WARNING and r.name == "veocreate.interpreter"]
    assert len(records) == 1
    assert records[0].line == 2
    assert records[0].command == "IO"
    assert "around line 2 (IO)" in records[0].getMessage()
    assert "VEO being abandoned" in records[0].getMessage()


def test_skipped_commands_and_comments_while_failed(make_session, output_dir):
    session = make_session()
    summary = session.run([
        "BV\tbroken",
        "IP\treport.txt",  # no IO yet
        "! still failed",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    assert session.state is State.VEO_FAILED
    assert summary.sealed == []
    assert summary.abandoned == ["broken"]
    assert list(output_dir.iterdir()) == []


def test_commands_before_first_veo_recover_at_bv(make_session, output_dir):
    session = make_session()
    summary = session.run([
        "IO\tRecord",
        "BV\tlater",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    assert summary.errors == 1
    assert summary.sealed == [output_dir / "later.veo.zip"]


def test_unknown_command_is_reported_and_skipped(make_session, output_dir, caplog):
    caplog.set_level(logging.ERROR, logger="veocreate")
    summary = make_session().run([
        "BV\tv",
        "IO\tRecord",
        "FROB\tx",
        "IP\treport.txt",
    ])
    assert summary.unknown_commands == 1
    assert summary.sealed == [output_dir / "v.veo.zip"]
    assert any("unknown command: 'FROB'" in r.getMessage() for r in caplog.records)


def test_event_requires_description(make_session):
    summary = make_session().run([
        "BV\tv",
        "IO\tRecord",
        "E\t2020-01-01\tCreated\tTester\t$$\tan error",
    ])
    assert summary.abandoned == ["v"]


def test_event_before_veo(make_session):
    summary = make_session().run(["E\t2020-01-01\tCreated\tTester\tdesc"])
    assert summary.errors == 1


def test_template_commands_need_template_directory(make_session, output_dir):
    summary = make_session(templates=False).run([
        "BV\tv",
        "IO\tRecord",
        "MP\trecord\tT\tA",
        "BV\tw",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    assert summary.abandoned == ["v"]
    assert summary.sealed == [output_dir / "w.veo.zip"]


def test_unknown_template_abandons_veo(make_session):
    summary = make_session().run(["BV\tv", "IO\tRecord", "MP\tno-such-template"])
    assert summary.abandoned == ["v"]


def test_missing_template_column_abandons_veo(make_session):
    summary = make_session().run(["BV\tv", "IO\tRecord", "MP\trecord\tonly title"])
    assert summary.abandoned == ["v"]


def test_mpc_continues_package(make_session, output_dir):
    make_session().run([
        "BV\tv",
        "IO\tRecord",
        "XML-MP\thttp://example.org/s",
        "ME\tfirst\t1",
        "MPC\trecord\tT\tA",
        "SME\tgroup\tid=\"g\"",
        "ME\tinner",
        "EME\tgroup",
        "IP\treport.txt",
    ])
    mp = _content(output_dir / "v.veo.zip", "v").find("vers:InformationObject/vers:MetadataPackage", namespaces=NS)
    assert mp.findtext("first") == "1"
    assert mp.findtext("record/title") == "T"
    assert mp.find("group").get("id") == "g"
    assert mp.find("group/inner") is not None


def test_rdf_mp_and_anzs(make_session, output_dir):
    summary = make_session().run([
        "BV\tv",
        "IO\tRecord",
        "RDF-MP\thttp://example.org/rdf\thttp://example.org/r/1\txmlns:ex=\"http://example.org/ns#\"",
        "ME\tex:title\tT",
        "ANZS5478-MP\thttp://example.org/r/1",
        "ME\tanzs5478:Name\tN",
        "IP\treport.txt",
    ])
    assert summary.errors == 0
    mps = _content(output_dir / "v.veo.zip", "v").findall(
        "vers:InformationObject/vers:MetadataPackage", namespaces=NS
    )
    assert len(mps) == 2


def test_rdf_mp_with_bad_resource_id(make_session):
    summary = make_session().run(["BV\tv", "IO\tRecord", "RDF-MP\thttp://example.org/rdf\tnot-a-url"])
    assert summary.abandoned == ["v"]


def test_veo_shorthand(make_session, output_dir):
    summary = make_session().run([
        "VEO\tquick\tRecord\tshorthand\tA summary\t$$\treport.txt\timage.png",
    ])
    assert summary.sealed == [output_dir / "quick.veo.zip"]
    content = _content(output_dir / "quick.veo.zip", "quick")
    io = content.find("vers:InformationObject", namespaces=NS)
    assert io.findtext("vers:InformationObjectType", namespaces=NS) == "Record"
    assert io.findtext("vers:MetadataPackage/summary", namespaces=NS) == "A summary"
    ips = io.findall("vers:InformationPiece", namespaces=NS)
    assert [ip.findtext("vers:ContentFile/vers:PathName", namespaces=NS) for ip in ips] == ["report.txt", "image.png"]
    event = _history(output_dir / "quick.veo.zip", "quick").find("vers:Event", namespaces=NS)
    assert event.findtext("vers:EventType", namespaces=NS) == "VEO Created"
    assert event.findtext("vers:Initiator", namespaces=NS) == "VEOCreate"


def test_veo_shorthand_with_missing_file_is_abandoned(make_session, output_dir):
    summary = make_session().run([
        "VEO\tbad\tRecord\tshorthand\tx\t$$\tmissing.txt",
        "VEO\tgood\tRecord\tshorthand\ty\t$$\treport.txt",
    ])
    assert summary.abandoned == ["bad"]
    assert summary.sealed == [output_dir / "good.veo.zip"]


def test_pfx_command_adds_signer(make_session, output_dir, second_pfx_file):
    session = make_session()
    session.run([
        f"PFX\t{second_pfx_file}\t{PFX_PASSWORD}",
        "BV\tv",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    assert len(session.signers) == 2
    names = _names(output_dir / "v.veo.zip")
    assert "v.veo/VEOContentSignature2.xml" in names
    assert "v.veo/VEOHistorySignature2.xml" in names


def test_pfx_command_with_wrong_password_is_fatal(make_session, second_pfx_file):
    with pytest.raises(ConfigError, match="failed to process PFX file"):
        make_session().run([f"PFX\t{second_pfx_file}\twrong"])


def test_bad_hash_is_fatal(make_session):
    with pytest.raises(ConfigError, match="Unsupported hash algorithm"):
        make_session().run(["HASH\tMD5"])


def test_debug_keeps_abandoned_staging_directory(make_session, output_dir):
    make_session(debug=True).run(["BV\tb", "IO\tRecord\t-2"])
    assert (output_dir / "b.veo" / "VEOReadme.txt").is_file()


def test_finalise_only_leaves_directories(make_session, output_dir):
    summary = make_session(finalise_only=True).run(["BV\tv", "IO\tRecord", "IP\treport.txt"])
    assert summary.sealed == [output_dir / "v.veo"]
    assert (output_dir / "v.veo" / "report.txt").is_file()


def test_end_of_stream_finalises(make_session, output_dir):
    summary = make_session().run(["BV\tv", "IO\tRecord", "IP\treport.txt"])
    assert summary.sealed == [output_dir / "v.veo.zip"]


def test_chatty_reports_each_veo(make_session, caplog):
    caplog.set_level(logging.INFO, logger="veocreate")
    make_session(chatty=True).run(["! hello", "BV\tv", "IO\tRecord", "IP\treport.txt"])
    messages = [r.getMessage() for r in caplog.records]
    assert "COMMENT: hello" in messages
    assert "Generating: v" in messages


def test_parallel_hashing(make_session, output_dir):
    summary = make_session(hash_workers=4).run([
        "BV\tv",
        "AC\tS-37-6",
        "IO\tRecord",
        "IP\treport.txt\timage.png\tS-37-6/minutes.txt\tS-37-6/agenda.txt",
    ])
    assert summary.sealed == [output_dir / "v.veo.zip"]


class TestControlFile:
    def test_build_from_file(self, control_dir, output_dir, support_dir, signer):
        ctl = control_dir / "control.txt"
        ctl.write_text("BV\tv\nIO\tRecord\nIP\treport.txt\nend\n", encoding="utf-8")
        summary = build_veos(ctl, output_dir=output_dir, support_dir=support_dir, signers=[signer])
        assert summary.sealed == [output_dir / "v.veo.zip"]
        assert summary.lines == 4

    def test_encoding(self, control_dir, output_dir, support_dir, signer):
        ctl = control_dir / "control.txt"
        ctl.write_bytes("BV\tcafé\nIO\tRecord\nIP\treport.txt\n".encode("latin-1"))
        summary = build_veos(
            ctl, output_dir=output_dir, support_dir=support_dir, signers=[signer], encoding="latin-1"
        )
        assert summary.sealed == [output_dir / "café.veo.zip"]

    def test_undecodable_is_fatal(self, control_dir):
        ctl = control_dir / "control.txt"
        ctl.write_bytes(b"BV\t\xff\xfe\xfa\n")
        with pytest.raises(VEOFatal, match="not valid utf-8"):
            read_control_file(ctl)

    def test_unknown_encoding(self, control_dir):
        ctl = control_dir / "control.txt"
        ctl.write_text("end\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            read_control_file(ctl, "no-such-codec")

    def test_missing_control_file(self, control_dir):
        with pytest.raises(VEOFatal, match="Failed to open control file"):
            read_control_file(control_dir / "nope.txt")

    def test_byte_order_mark_is_dropped(self, control_dir):
        ctl = control_dir / "control.txt"
        ctl.write_bytes("\ufeffBV\tv\n".encode("utf-8"))
        assert read_control_file(ctl) == ["BV\tv"]


def test_abandoning_a_veo_keeps_earlier_veo_with_same_name(make_session, output_dir):
    summary = make_session().run([
        "BV\tdup",
        "IO\tRecord",
        "IP\treport.txt",
        "BV\tdup",
        "IO\tRecord\tnotanumber",
    ])
    sealed = output_dir / "dup.veo.zip"
    assert summary.sealed == [sealed]
    assert summary.abandoned == ["dup"]
    assert sealed.is_file()
    assert "dup.veo/report.txt" in _names(sealed)


def test_abandoning_a_veo_keeps_output_of_an_earlier_run(make_session, output_dir):
    make_session().run(["BV\trerun", "IO\tRecord", "IP\treport.txt"])
    summary = make_session().run(["BV\trerun", "IO\tRecord\tabc"])
    assert summary.abandoned == ["rerun"]
    assert (output_dir / "rerun.veo.zip").is_file()


@pytest.mark.parametrize("late", ["HASH\tSHA-512", f"PFX\tanything.pfx\t{PFX_PASSWORD}"])
@pytest.mark.parametrize("start", ["BV", "VEO"])
def test_failed_veo_start_still_closes_the_preamble(make_session, output_dir, late, start):
    session = make_session()
    with pytest.raises(ConfigError, match="before the first VEO"):
        session.run([start, late, "BV\tv1"])
    assert list(output_dir.iterdir()) == []


@pytest.mark.parametrize("finalise_only", [False, True])
@pytest.mark.parametrize("generated", ["VEOContent.xml", "VEOHistory.xml", "VEOReadme.txt", "veocontentsignature1.xml"])
def test_content_file_cannot_replace_generated_file(make_session, control_dir, output_dir, finalise_only, generated):
    (control_dir / generated).write_text("not the manifest", encoding="utf-8")
    summary = make_session(finalise_only=finalise_only).run([
        "BV\tclash",
        "IO\tRecord",
        f"IP\t{generated}",
        "BV\tfine",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    assert summary.abandoned == ["clash"]
    assert summary.errors == 1
    assert not (output_dir / "clash.veo.zip").exists()
    assert not (output_dir / "clash.veo").exists()
    fine = output_dir / ("fine.veo" if finalise_only else "fine.veo.zip")
    assert summary.sealed == [fine]


def test_every_signer_signs_through_the_document(make_session, output_dir, second_pfx_file, caplog):
    caplog.set_level(logging.DEBUG, logger="veocreate.veo")
    session = make_session()
    session.run([
        f"PFX\t{second_pfx_file}\t{PFX_PASSWORD}",
        "BV\tv",
        "IO\tRecord",
        "IP\treport.txt",
    ])
    signing = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Signing 'v' with")]
    assert len(signing) == 2
    assert all(m.endswith("using SHA-256") for m in signing)
