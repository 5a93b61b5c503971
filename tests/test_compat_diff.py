import pytest

from compatgate.compat import ChangeKind, CompatibilitySnapshot, check_compatibility, diff_snapshots
from compatgate.errors import CompatibilityViolation


def snap(mapping):
    return CompatibilitySnapshot.from_mapping(mapping)


def proto(text):
    return CompatibilitySnapshot.from_proto(text)


BASE = snap({"A": "int32", "B": "string"})


def test_additive_change_passes():
    result = check_compatibility(BASE, snap({"A": "int32", "B": "string", "C": "bool"}))

    assert result.passed
    assert result.findings == []


def test_removed_element_fails():
    result = check_compatibility(BASE, snap({"A": "int32"}))

    assert not result.passed
    assert [(f.element, f.kind) for f in result.findings] == [("B", "removed")]


def test_retyped_element_fails():
    result = check_compatibility(BASE, snap({"A": "int64", "B": "string"}))

    assert not result.passed
    assert [(f.element, f.kind) for f in result.findings] == [("A", "retyped")]
    assert result.findings[0].detail == "int32 -> int64"


def test_identical_snapshots_pass():
    assert check_compatibility(BASE, snap({"B": "string", "A": "int32"})).passed


def test_declaration_order_does_not_matter():
    a = proto("""
        package p;
        message M { int32 x = 1; string y = 2; }
        enum E { E_UNSPECIFIED = 0; E_ONE = 1; }
    """)
    b = proto("""
        package p;
        enum E { E_ONE = 1; E_UNSPECIFIED = 0; }
        message M { string y = 2; int32 x = 1; }
    """)

    assert a == b
    assert diff_snapshots(a, b).changes == ()


def test_renumbered_field():
    base = proto("message M { int32 x = 1; }")
    head = proto("message M { int32 x = 2; }")

    changes = diff_snapshots(base, head).breaking
    assert [(c.element, c.kind) for c in changes] == [("M.x", ChangeKind.RENUMBERED)]


def test_renamed_field_is_breaking():
    base = proto("message M { int32 height = 1; }")
    head = proto("message M { int32 block_height = 1; }")

    result = diff_snapshots(base, head)

    assert [(c.element, c.kind) for c in result.changes] == [("M.height", ChangeKind.RENAMED)]
    assert "block_height" in result.changes[0].detail
    assert not result.passed


def test_new_required_field_is_breaking():
    base = proto('syntax = "proto2"; message M { optional int32 a = 1; }')
    head = proto('syntax = "proto2"; message M { optional int32 a = 1; required int32 b = 2; }')

    changes = diff_snapshots(base, head).breaking
    assert [(c.element, c.kind) for c in changes] == [("M.b", ChangeKind.REQUIRED_ADDED)]


def test_removed_message_is_reported_once():
    base = proto("""
        package net;
        message Handshake { uint32 version = 1; bytes peer_id = 2; message Inner { int32 z = 1; } }
        message Ping { uint64 nonce = 1; }
    """)
    head = proto("package net; message Ping { uint64 nonce = 1; }")

    changes = diff_snapshots(base, head).breaking
    assert [(c.element, c.kind) for c in changes] == [("net.Handshake", ChangeKind.REMOVED)]


def test_new_message_is_reported_once_as_added():
    base = proto("message A { int32 x = 1; }")
    head = proto("message A { int32 x = 1; } message B { int32 y = 1; string z = 2; }")

    result = diff_snapshots(base, head)
    assert result.passed
    assert [(c.element, c.kind) for c in result.changes] == [("B", ChangeKind.ADDED)]


def test_diff_does_not_touch_its_inputs():
    head = snap({"A": "int32"})
    before = (BASE.to_dict(), head.to_dict())

    diff_snapshots(BASE, head)

    assert (BASE.to_dict(), head.to_dict()) == before


def test_failure_raises_violation_with_findings():
    result = check_compatibility(BASE, snap({"A": "int32"}))

    with pytest.raises(CompatibilityViolation) as exc:
        result.raise_for_failure("protobuf backward compatibility", "buf breaking")
    assert exc.value.findings == [{"element": "B", "kind": "removed", "detail": "field string"}]
    assert "B: removed" in str(exc.value)
