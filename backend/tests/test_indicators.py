from app.enrichment.indicators import (
    extract_indicators,
    normalize_cve,
    normalize_domain,
    normalize_email,
    normalize_hash,
    normalize_ip,
    normalize_url,
)


SAMPLE = """
  CVE-2024-12345
  https://example.com/path?a=1#frag
  Contact: SOC@example.com
  IOC: 8.8.8.8
  sha256: e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855
  Domain: sub.Example.com
"""


def _by_kind(out, kind):
    return [x for x in out if x.kind == kind]


def test_extracts_every_kind():
    out = extract_indicators(SAMPLE, "content_text")
    assert {x.kind for x in out} == {"url", "email", "cve", "hash", "ip", "domain"}
    assert all(x.source == "content_text" for x in out)

    assert _by_kind(out, "url")[0].normalized_value == "https://example.com/path?a=1"
    assert _by_kind(out, "email")[0].normalized_value == "soc@example.com"
    assert _by_kind(out, "cve")[0].normalized_value == "CVE-2024-12345"
    assert _by_kind(out, "ip")[0].normalized_value == "8.8.8.8"
    assert _by_kind(out, "hash")[0].normalized_value.startswith("e3b0c442")
    assert "sub.example.com" in {x.normalized_value for x in _by_kind(out, "domain")}


def test_kinds_come_out_in_scan_order():
    out = extract_indicators(SAMPLE, "t")
    order = []
    for x in out:
        if x.kind not in order:
            order.append(x.kind)
    assert order == ["url", "email", "cve", "hash", "ip", "domain"]


def test_dedupes_by_normalized_form():
    out = extract_indicators("https://EXAMPLE.com https://example.com/", "t")
    urls = _by_kind(out, "url")
    assert len(urls) == 1
    assert urls[0].value == "https://EXAMPLE.com"


def test_url_host_is_reemitted_as_domain():
    out = extract_indicators("see http://evil.example.org:8080/payload.bin", "t")
    domains = {x.normalized_value for x in _by_kind(out, "domain")}
    assert "evil.example.org" in domains
    assert _by_kind(out, "url")[0].normalized_value == "http://evil.example.org:8080/payload.bin"


def test_deterministic_and_duplicate_free():
    text = SAMPLE + " 8.8.8.8 cve-2024-12345 soc@EXAMPLE.com " + SAMPLE
    first = extract_indicators(text, "t")
    second = extract_indicators(text, "t")
    assert first == second
    keys = [(x.kind, x.normalized_value) for x in first]
    assert len(keys) == len(set(keys))


def test_invalid_ip_is_dropped_silently():
    out = extract_indicators("bad 300.1.1.1 good 1.2.3.4", "t")
    assert [x.normalized_value for x in _by_kind(out, "ip")] == ["1.2.3.4"]


def test_trailing_punctuation_is_trimmed():
    out = extract_indicators('("https://example.com/a.")', "t")
    assert _by_kind(out, "url")[0].normalized_value == "https://example.com/a"


def test_empty_and_none_input():
    assert extract_indicators("", "t") == []
    assert extract_indicators("   ", "t") == []
    assert extract_indicators(None, "t") == []


def test_never_raises_on_odd_urls():
    out = extract_indicators("http://[::1 http://host:notaport/x http:// ", "t")
    assert _by_kind(out, "url") == []


def test_normalizers():
    assert normalize_cve("cve-2024-1234") == "CVE-2024-1234"
    assert normalize_cve("CVE-24-1") is None
    assert normalize_ip("300.1.1.1") is None
    assert normalize_ip("010.001.002.003") == "10.1.2.3"
    assert normalize_hash("not-hex") is None
    assert normalize_hash("D41D8CD98F00B204E9800998ECF8427E") == "d41d8cd98f00b204e9800998ecf8427e"
    assert normalize_email("a@b@c.com") is None
    assert normalize_email("<Analyst@Example.COM>") == "analyst@example.com"
    assert normalize_domain("Example.COM.") == "example.com"
    assert normalize_domain("localhost") is None
    assert normalize_url("ftp://example.com") is None
    assert normalize_url("HTTPS://Example.com") == "https://example.com/"
