import pytest

import main
from main import RuleConverter

LINKS = {
    "https://example.com/streaming.list#policy=Streaming": (
        "DOMAIN-SUFFIX,netflix.com\n# comment\nUSER-AGENT,Netflix*\nIP-CIDR6,2a00::/32,no-resolve"
    ),
    "https://example.com/ads.txt#policy=reject&domain-set=true": ".doubleclick.net\nads.example.com\n",
}


def fake_fetch(link):
    return LINKS.get(link)


def write_source(directory, name, links):
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["surge:"] + [f"  - {link}" for link in links]
    path = directory / name
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_process_source_file_merges_links_in_order(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "fetch_rule_content", fake_fetch)
    source = write_source(tmp_path / "source", "mixed.yaml", list(LINKS))
    output_dir = tmp_path / "rule"

    summary = RuleConverter().process_source_file(str(source), str(output_dir))

    assert (output_dir / "mixed.list").read_text(encoding="utf-8") == (
        "host-suffix,netflix.com,Streaming\n"
        "ip6-cidr,2a00::/32,Streaming\n"
        "host-suffix,doubleclick.net,reject\n"
        "host,ads.example.com,reject\n"
    )
    assert summary == {
        "total_lines": 7,
        "processed_lines": 4,
        "skipped_lines": 2,
        "error_lines": 1,
        "failed_links": 0,
    }


def test_process_source_file_counts_failed_links(tmp_path, monkeypatch):
    source = write_source(
        tmp_path / "source",
        "partial.yaml",
        [
            "https://example.com/missing.list",
            "https://example.com/streaming.list#policy=Streaming",
            "https://example.com/broken.list#policy=%ZZ",
        ],
    )
    links = dict(LINKS)
    links["https://example.com/broken.list#policy=%ZZ"] = "DOMAIN,a.com"
    monkeypatch.setattr(main, "fetch_rule_content", links.get)

    summary = RuleConverter().process_source_file(str(source), str(tmp_path / "rule"))

    assert summary["failed_links"] == 2
    assert summary["processed_lines"] == 2
    assert (tmp_path / "rule" / "partial.list").read_text(encoding="utf-8") == (
        "host-suffix,netflix.com,Streaming\nip6-cidr,2a00::/32,Streaming\n"
    )


def test_process_source_file_empty_content_is_failed_link(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "fetch_rule_content", lambda link: "")
    source = write_source(tmp_path / "source", "empty.yaml", ["https://example.com/empty.list"])

    summary = RuleConverter().process_source_file(str(source), str(tmp_path / "rule"))

    assert summary["failed_links"] == 1
    assert (tmp_path / "rule" / "empty.list").read_text(encoding="utf-8") == ""


def test_main_batch_mode_rebuilds_output_directory(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "fetch_rule_content", fake_fetch)
    source_dir = tmp_path / "source"
    write_source(source_dir, "streaming.yaml", ["https://example.com/streaming.list#policy=Streaming"])
    (source_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    output_dir = tmp_path / "rule" / "quantumultx"
    output_dir.mkdir(parents=True)
    (output_dir / "stale.list").write_text("host,old.com,proxy\n", encoding="utf-8")

    monkeypatch.setattr(main.config, "source_dir", str(source_dir))
    monkeypatch.setattr(main.config, "quantumultx_output_directory", str(output_dir))

    assert RuleConverter().main() == 0
    assert sorted(p.name for p in output_dir.iterdir()) == ["streaming.list"]


def test_main_batch_mode_missing_source_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(main.config, "source_dir", str(tmp_path / "nope"))
    assert RuleConverter().main() == 1


def test_main_batch_mode_skips_malformed_source_file(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "fetch_rule_content", fake_fetch)
    source_dir = tmp_path / "source"
    source_dir.mkdir()
    (source_dir / "a_bad.yaml").write_text("surge: [unclosed\n", encoding="utf-8")
    write_source(source_dir, "b_good.yaml", ["https://example.com/streaming.list#policy=Streaming"])
    output_dir = tmp_path / "rule" / "quantumultx"

    monkeypatch.setattr(main.config, "source_dir", str(source_dir))
    monkeypatch.setattr(main.config, "quantumultx_output_directory", str(output_dir))

    assert RuleConverter().main() == 0
    assert sorted(p.name for p in output_dir.iterdir()) == ["b_good.list"]
    assert (output_dir / "b_good.list").read_text(encoding="utf-8") == (
        "host-suffix,netflix.com,Streaming\nip6-cidr,2a00::/32,Streaming\n"
    )


def test_process_source_file_rejects_mapping_of_links(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "fetch_rule_content", fake_fetch)
    source = tmp_path / "mapping.yaml"
    source.write_text("surge:\n  streaming: https://example.com/streaming.list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        RuleConverter().process_source_file(str(source), str(tmp_path / "rule"))
    assert not (tmp_path / "rule" / "mapping.list").exists()
