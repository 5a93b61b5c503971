import json

import pytest

from compatgate.compat import CompatibilitySnapshot

NETWORK_PROTO = """
syntax = "proto3";
package near.network;

import "google/protobuf/timestamp.proto";
option go_package = "near/network";

// Sent when a peer connects.
message Handshake {
  uint32 protocol_version = 1;
  bytes sender_peer_id = 2 [deprecated = true];
  repeated string partial_edges = 3;
  map<string, uint64> chain_heights = 4;
  oneof info {
    string peer_name = 5;
    .near.network.Ping ping = 6;
  }
  reserved 7, 8;
  message Features { bool archival = 1; }
  enum Status { UNKNOWN = 0; READY = 1; }
}

message Ping { uint64 nonce = 1; }

/* service used by the indexer */
service PeerApi {
  option deprecated = false;
  rpc Connect (Handshake) returns (stream Ping);
  rpc Probe (Ping) returns (Ping) { option idempotency_level = NO_SIDE_EFFECTS; }
}
"""


@pytest.fixture(scope="module")
def network():
    return CompatibilitySnapshot.from_proto(NETWORK_PROTO, source="network.proto")


def test_elements_are_keyed_by_qualified_path(network):
    assert list(network) == sorted(network)
    assert network["near.network.Handshake"].kind == "message"
    assert network["near.network.Handshake"].parent == "near.network"
    assert network["near.network.Handshake.protocol_version"].type == "uint32"
    assert network["near.network.Handshake.protocol_version"].number == 1
    assert network["near.network.Handshake.Features.archival"].parent == "near.network.Handshake.Features"


def test_field_labels_and_types(network):
    edges = network["near.network.Handshake.partial_edges"]
    assert (edges.label, edges.type) == ("repeated", "string")
    assert network["near.network.Handshake.chain_heights"].type == "map<string,uint64>"
    assert network["near.network.Handshake.sender_peer_id"].number == 2


def test_oneof_members_carry_their_group(network):
    ping = network["near.network.Handshake.ping"]
    assert ping.label == "oneof info"
    assert ping.type == "near.network.Ping"


def test_enum_values(network):
    assert network["near.network.Handshake.Status"].kind == "enum"
    ready = network["near.network.Handshake.Status.READY"]
    assert (ready.kind, ready.number) == ("enum_value", 1)


def test_rpcs(network):
    connect = network["near.network.PeerApi.Connect"]
    assert connect.kind == "rpc"
    assert connect.type == "(Handshake) returns (stream Ping)"
    assert "near.network.PeerApi.Probe" in network


def test_reserved_ranges_are_not_elements(network):
    assert network.by_number("near.network.Handshake", "field", 7) is None


def test_unparseable_proto_names_the_file():
    with pytest.raises(ValueError) as exc:
        CompatibilitySnapshot.from_proto("message M { int32 x = ; }", source="bad.proto")
    assert "bad.proto" in str(exc.value)


def test_conflicting_definitions_across_files():
    with pytest.raises(ValueError):
        CompatibilitySnapshot.from_documents({
            "a.proto": "message M { int32 x = 1; }",
            "b.proto": "message M { string x = 1; }",
        })


def test_json_documents(tmp_path):
    path = tmp_path / "errors.json"
    path.write_text(json.dumps({"A": "int32", "B": {"type": "string", "number": 2, "label": "repeated"}}))

    snapshot = CompatibilitySnapshot.load(path)

    assert snapshot["A"].type == "int32"
    assert snapshot["B"].signature == "repeated string"
    again = CompatibilitySnapshot.from_json(json.dumps(snapshot.to_dict()))
    assert again == snapshot


def test_unsupported_file_type():
    with pytest.raises(ValueError):
        CompatibilitySnapshot.from_documents({"schema.yaml": "A: int32"})
