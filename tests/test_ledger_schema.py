"""Tests for datawallet.ledger_schema."""

from __future__ import annotations

import json

import pytest

from datawallet.errors import LedgerSchemaError
from datawallet.ledger_schema import ContractSchema, decode_values, encode_arguments

SCHEMA = {
    "name": "EmailDataWallet",
    "functions": [
        {
            "name": "isRegistered",
            "selector": "0xc3c5a547",
            "mutability": "view",
            "inputs": [{"name": "user", "type": "address"}],
            "outputs": [{"type": "bool"}],
        },
        {
            "name": "getCreditBalance",
            "selector": "0x5a2f0d7c",
            "mutability": "view",
            "inputs": [{"name": "user", "type": "address"}],
            "outputs": [{"type": "uint256"}],
        },
        {
            "name": "updateIPFSHash",
            "selector": "0x8f4e1b62",
            "mutability": "nonpayable",
            "inputs": [{"name": "walletId", "type": "bytes32"}, {"name": "ipfsHash", "type": "string"}],
        },
    ],
}

ADDRESS = "0x" + "a1" * 20


@pytest.fixture
def schema() -> ContractSchema:
    return ContractSchema.model_validate(SCHEMA)


class TestContractSchema:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "contract.json"
        path.write_text(json.dumps(SCHEMA))
        schema = ContractSchema.load(path)
        assert schema.function("isRegistered").signature == "isRegistered(address)"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(LedgerSchemaError, match="invalid contract schema"):
            ContractSchema.load(tmp_path / "missing.json")

    def test_load_rejects_unsupported_type(self, tmp_path):
        bad = json.loads(json.dumps(SCHEMA))
        bad["functions"][0]["inputs"][0]["type"] = "uint8[]"
        path = tmp_path / "contract.json"
        path.write_text(json.dumps(bad))
        with pytest.raises(LedgerSchemaError):
            ContractSchema.load(path)

    def test_rejects_malformed_selector(self):
        bad = json.loads(json.dumps(SCHEMA))
        bad["functions"][0]["selector"] = "0xZZ"
        with pytest.raises(ValueError):
            ContractSchema.model_validate(bad)

    def test_rejects_overloads(self):
        bad = json.loads(json.dumps(SCHEMA))
        bad["functions"].append(dict(bad["functions"][0]))
        with pytest.raises(ValueError, match="overloaded"):
            ContractSchema.model_validate(bad)

    def test_require_checks_shape(self, schema: ContractSchema):
        fn = schema.require("updateIPFSHash", inputs=["bytes32", "string"], read_only=False)
        assert not fn.read_only

        with pytest.raises(LedgerSchemaError, match="expected inputs"):
            schema.require("isRegistered", inputs=["bytes32"], read_only=True)
        with pytest.raises(LedgerSchemaError, match="expected outputs"):
            schema.require("isRegistered", inputs=["address"], outputs=["uint256"], read_only=True)
        with pytest.raises(LedgerSchemaError, match="must be read-only"):
            schema.require("updateIPFSHash", inputs=["bytes32", "string"], read_only=True)
        with pytest.raises(LedgerSchemaError, match="no function"):
            schema.function("transfer")


class TestEncoding:
    def test_encode_static_call(self, schema: ContractSchema):
        data = schema.function("isRegistered").encode_call(ADDRESS)
        assert data == "0xc3c5a547" + "00" * 12 + "a1" * 20

    def test_encode_dynamic_string(self, schema: ContractSchema):
        wallet_id = bytes(range(32))
        data = schema.function("updateIPFSHash").encode_call(wallet_id, "bafy")
        raw = bytes.fromhex(data[10:])

        assert raw[:32] == wallet_id
        assert int.from_bytes(raw[32:64], "big") == 64
        assert int.from_bytes(raw[64:96], "big") == 4
        assert raw[96:100] == b"bafy"
        assert len(raw) == 128

    def test_wrong_argument_count(self, schema: ContractSchema):
        with pytest.raises(LedgerSchemaError, match="takes 1 arguments"):
            schema.function("isRegistered").encode_call()

    @pytest.mark.parametrize("value", ["0x1234", "not-an-address"])
    def test_bad_address(self, schema: ContractSchema, value: str):
        with pytest.raises(LedgerSchemaError):
            schema.function("isRegistered").encode_call(value)

    def test_decode_results(self, schema: ContractSchema):
        assert schema.function("isRegistered").decode_result("0x" + "00" * 31 + "01") == [True]
        assert schema.function("getCreditBalance").decode_result("0x" + (60).to_bytes(32, "big").hex()) == [60]

    def test_decode_string_and_address(self):
        encoded = encode_arguments(["address", "string"], [ADDRESS, "hello"])
        assert decode_values(["address", "string"], encoded) == [ADDRESS, "hello"]

    def test_decode_short_data(self):
        with pytest.raises(LedgerSchemaError, match="too short"):
            decode_values(["bool"], b"\x00" * 4)
