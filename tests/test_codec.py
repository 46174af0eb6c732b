"""Tests for the canonical entity codec.

Covers:
- encode/decode round-trip for every entity type
- Byte-identical re-encoding (determinism)
- Canonical layout: sorted keys, nulls for absent optionals, one trailing newline
- Typed decode errors (syntax, unknown type, schema)
- Unknown fields preserved through decode/encode
- content_hash ignores version
- blob_id matches git's object ids
"""

import pytest

from tbd_core.errors import (
    DecodeErrorKind,
    MalformedSyntaxError,
    SchemaValidationError,
    UnknownEntityTypeError,
    UpgradeRequiredError,
)
from tbd_core.model.entities import Agent, Message
from tbd_core.store.codec import (
    blob_id,
    content_hash,
    decode,
    encode,
    split_front_matter,
)

# ---------------------------------------------------------------------------
# Round-trip
# ---------------------------------------------------------------------------


class TestRoundTrip:
    """decode(encode(e)) == e and encoding is stable."""

    def test_issue_round_trip(self, make_issue):
        """An issue with nested fields survives a round-trip unchanged."""
        issue = make_issue(
            description="Users cannot log in.\n\nSteps:\n1. open page",
            labels=["backend", "auth"],
            dependencies=[{"target": "is-zz99yy", "relation": "related"}],
            extensions={"gh": {"number": 12}},
        )
        assert decode(encode(issue)) == issue

    def test_agent_round_trip(self):
        agent = Agent(
            id="ag-0a1b2c",
            name="planner",
            capabilities=["triage", "code"],
            created_at="2025-01-07T10:00:00Z",
            updated_at="2025-01-07T10:00:00Z",
        )
        assert decode(encode(agent)) == agent

    def test_message_round_trip(self):
        message = Message(
            id="ms-0a1b2c",
            sender="ag-0a1b2c",
            recipients=["ag-ffff00", "ag-aaaa11"],
            body="Please review is-ab12cd.",
            acks=[{"agent": "ag-ffff00", "at": "2025-01-07T11:00:00Z"}],
            created_at="2025-01-07T10:00:00Z",
            updated_at="2025-01-07T10:00:00Z",
        )
        assert decode(encode(message)) == message

    def test_reencoding_is_byte_identical(self, make_issue):
        """Encoding a decoded entity reproduces the exact bytes."""
        data = encode(make_issue(labels=["b", "a"], notes="n"))
        assert encode(decode(data)) == data
        assert encode(decode(encode(decode(data)))) == data

    def test_unicode_preserved(self, make_issue):
        issue = make_issue(title="Corriger l'écran de connexion ✓")
        data = encode(issue)
        assert "✓".encode("utf-8") in data
        assert decode(data).title == issue.title


# ---------------------------------------------------------------------------
# Canonical layout
# ---------------------------------------------------------------------------


class TestCanonicalLayout:
    """The on-disk form follows one fixed layout."""

    def test_front_matter_delimiters(self, make_issue):
        data = encode(make_issue())
        assert data.startswith(b"---\n")
        assert b"\n---\n" in data

    def test_keys_sorted(self, make_issue):
        """Front-matter keys appear in codepoint order."""
        fields, _ = split_front_matter(encode(make_issue()))
        assert list(fields) == sorted(fields)

    def test_absent_optionals_written_as_null(self, make_issue):
        data = encode(make_issue())
        assert b"assignee: null\n" in data
        assert b"closed_at: null\n" in data

    def test_single_trailing_newline(self, make_issue):
        data = encode(make_issue(description="Body text\n\n\n"))
        assert data.endswith(b"Body text\n")
        assert not data.endswith(b"\n\n")

    def test_body_not_in_front_matter(self, make_issue):
        fields, body = split_front_matter(
            encode(make_issue(description="Hello"))
        )
        assert "description" not in fields
        assert body.strip() == "Hello"

    def test_crlf_body_normalized(self, make_issue):
        issue = make_issue(description="one\r\ntwo\r\n")
        assert b"\r" not in encode(issue)
        assert issue.description == "one\ntwo"

    def test_label_order_does_not_matter(self, make_issue):
        a = make_issue(labels=["x", "y", "x"])
        b = make_issue(labels=["y", "x"])
        assert encode(a) == encode(b)


# ---------------------------------------------------------------------------
# Decode errors
# ---------------------------------------------------------------------------


class TestDecodeErrors:
    """Malformed input raises typed errors, never a partial entity."""

    def test_missing_front_matter(self):
        with pytest.raises(MalformedSyntaxError) as exc_info:
            decode(b"just some text\n", path="entities/is/is-abcd.md")
        assert exc_info.value.kind == DecodeErrorKind.MALFORMED_SYNTAX
        assert exc_info.value.path == "entities/is/is-abcd.md"

    def test_invalid_yaml(self):
        with pytest.raises(MalformedSyntaxError):
            decode(b"---\ntitle: [unclosed\n---\n")

    def test_invalid_utf8(self):
        with pytest.raises(MalformedSyntaxError):
            decode(b"---\ntitle: \xff\xfe\n---\n")

    def test_front_matter_not_a_mapping(self):
        with pytest.raises(MalformedSyntaxError):
            decode(b"---\n- a\n- b\n---\n")

    def test_unknown_entity_type(self):
        with pytest.raises(UnknownEntityTypeError) as exc_info:
            decode(b"---\ntype: zz\nid: zz-abcd\n---\n")
        assert exc_info.value.kind == DecodeErrorKind.UNKNOWN_ENTITY_TYPE

    def test_missing_type(self):
        with pytest.raises(UnknownEntityTypeError):
            decode(b"---\nid: is-abcd\n---\n")

    def test_schema_violation(self):
        """A known type with missing required fields fails validation."""
        with pytest.raises(SchemaValidationError) as exc_info:
            decode(b"---\ntype: is\nid: is-abcd\n---\n")
        assert exc_info.value.kind == DecodeErrorKind.SCHEMA_VALIDATION

    def test_id_type_mismatch(self, make_issue):
        data = encode(make_issue()).replace(
            b"id: is-ab12cd", b"id: ag-ab12cd"
        )
        with pytest.raises(SchemaValidationError):
            decode(data)

    def test_newer_format_refused(self, make_issue):
        with pytest.raises(UpgradeRequiredError):
            decode(encode(make_issue()), format_version="f99")

    def test_bom_tolerated(self, make_issue):
        issue = make_issue()
        assert decode(b"\xef\xbb\xbf" + encode(issue)) == issue


# ---------------------------------------------------------------------------
# Forward compatibility
# ---------------------------------------------------------------------------


class TestUnknownFields:
    """Fields written by a newer version are carried, not dropped."""

    def test_extra_field_survives_round_trip(self, make_issue):
        data = encode(make_issue()).replace(
            b"---\n", b"---\nzz_future_field: kept\n", 1
        )
        issue = decode(data)
        assert issue.model_extra == {"zz_future_field": "kept"}
        assert b"zz_future_field: kept\n" in encode(issue)

    def test_extension_namespaces_preserved(self, make_issue):
        issue = make_issue(
            extensions={"jira": {"key": "AUTH-1", "sprint": {"n": 4}}}
        )
        assert decode(encode(issue)).extensions == issue.extensions


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


class TestContentHash:
    """content_hash identifies logical content."""

    def test_ignores_version(self, make_issue):
        issue = make_issue()
        assert content_hash(issue) == content_hash(issue.evolve(version=7))

    def test_changes_with_content(self, make_issue):
        issue = make_issue()
        assert content_hash(issue) != content_hash(issue.evolve(priority=0))

    def test_is_sha256_hex(self, make_issue):
        digest = content_hash(make_issue())
        assert len(digest) == 64
        int(digest, 16)


class TestBlobId:
    """blob_id agrees with ``git hash-object``."""

    def test_empty_blob(self):
        assert blob_id(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"

    def test_hello_blob(self):
        assert (
            blob_id(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"
        )
