"""Typed description of the attestation contract and its call encoding.

The schema is a JSON document validated with pydantic when the ledger
adapter starts, so a malformed schema stops the service instead of
failing individual calls later.  Example::

    {
      "name": "EmailDataWallet",
      "functions": [
        {"name": "isRegistered", "selector": "0xc3c5a547", "mutability": "view",
         "inputs": [{"name": "user", "type": "address"}],
         "outputs": [{"type": "bool"}]}
      ]
    }

Selectors are given explicitly (first four bytes of the keccak-256 hash of
the canonical signature) and only the static types ``address``, ``bool``,
``uint256``, ``bytes32`` and the dynamic type ``string`` are supported.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, Field, model_validator

from .errors import LedgerSchemaError

AbiType = Literal["address", "bool", "uint256", "bytes32", "string"]

WORD = 32


class Mutability(str, Enum):
    VIEW = "view"
    PURE = "pure"
    NONPAYABLE = "nonpayable"


class AbiParameter(BaseModel):
    name: str = ""
    type: AbiType


class ContractFunction(BaseModel):
    name: str = Field(min_length=1)
    selector: str = Field(pattern=r"^0x[0-9a-f]{8}$", description="4-byte function selector")
    mutability: Mutability
    inputs: list[AbiParameter] = Field(default_factory=list)
    outputs: list[AbiParameter] = Field(default_factory=list)

    @property
    def read_only(self) -> bool:
        return self.mutability in (Mutability.VIEW, Mutability.PURE)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.inputs)})"

    def encode_call(self, *args: Any) -> str:
        """0x-prefixed calldata for a call with *args*."""
        if len(args) != len(self.inputs):
            raise LedgerSchemaError(f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}")
        encoded = encode_arguments([p.type for p in self.inputs], list(args))
        return self.selector + encoded.hex()

    def decode_result(self, data: str) -> list[Any]:
        raw = bytes.fromhex(data.removeprefix("0x"))
        return decode_values([p.type for p in self.outputs], raw)


class ContractSchema(BaseModel):
    name: str
    functions: list[ContractFunction]

    @model_validator(mode="after")
    def _unique_functions(self) -> ContractSchema:
        names = [f.name for f in self.functions]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"overloaded functions are not supported: {', '.join(duplicates)}")
        return self

    @classmethod
    def load(cls, path: str | Path) -> ContractSchema:
        try:
            return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, pydantic.ValidationError) as exc:
            raise LedgerSchemaError(f"invalid contract schema {path}: {exc}") from exc

    def function(self, name: str) -> ContractFunction:
        for fn in self.functions:
            if fn.name == name:
                return fn
        raise LedgerSchemaError(f"contract {self.name} has no function {name}")

    def require(
        self,
        name: str,
        *,
        inputs: list[str],
        outputs: list[str] | None = None,
        read_only: bool,
    ) -> ContractFunction:
        """Look up *name* and check it has the expected shape."""
        fn = self.function(name)
        actual_inputs = [p.type for p in fn.inputs]
        if actual_inputs != inputs:
            raise LedgerSchemaError(f"{fn.signature}: expected inputs ({','.join(inputs)})")
        if outputs is not None and [p.type for p in fn.outputs] != outputs:
            raise LedgerSchemaError(f"{fn.signature}: expected outputs ({','.join(outputs)})")
        if fn.read_only != read_only:
            raise LedgerSchemaError(
                f"{fn.signature} must be {'read-only' if read_only else 'state-changing'}"
            )
        return fn


# ------------------------------------------------------------------
# ABI encoding for the supported type subset
# ------------------------------------------------------------------


def _pad_right(data: bytes) -> bytes:
    return data + b"\x00" * (-len(data) % WORD)


def _hex_bytes(value: Any) -> bytes:
    try:
        return bytes.fromhex(str(value).removeprefix("0x"))
    except ValueError as exc:
        raise LedgerSchemaError(f"not a hex value: {value!r}") from exc


def _encode_static(abi_type: str, value: Any) -> bytes:
    if abi_type == "address":
        raw = _hex_bytes(value)
        if len(raw) != 20:
            raise LedgerSchemaError(f"address must be 20 bytes: {value!r}")
        return raw.rjust(WORD, b"\x00")
    if abi_type == "bool":
        return int(bool(value)).to_bytes(WORD, "big")
    if abi_type == "uint256":
        number = int(value)
        if not 0 <= number < 2**256:
            raise LedgerSchemaError(f"uint256 out of range: {value!r}")
        return number.to_bytes(WORD, "big")
    if abi_type == "bytes32":
        raw = value if isinstance(value, bytes) else _hex_bytes(value)
        if len(raw) != WORD:
            raise LedgerSchemaError(f"bytes32 must be 32 bytes: {value!r}")
        return raw
    raise LedgerSchemaError(f"unsupported static type {abi_type}")


def encode_arguments(types: list[str], values: list[Any]) -> bytes:
    head = b""
    tail = b""
    head_size = WORD * len(types)
    for abi_type, value in zip(types, values, strict=True):
        if abi_type == "string":
            data = str(value).encode("utf-8")
            head += (head_size + len(tail)).to_bytes(WORD, "big")
            tail += len(data).to_bytes(WORD, "big") + _pad_right(data)
        else:
            head += _encode_static(abi_type, value)
    return head + tail


def decode_values(types: list[str], data: bytes) -> list[Any]:
    if len(data) < WORD * len(types):
        raise LedgerSchemaError(f"return data too short: {len(data)} bytes for {len(types)} values")
    values: list[Any] = []
    for index, abi_type in enumerate(types):
        word = data[index * WORD : (index + 1) * WORD]
        if abi_type == "address":
            values.append("0x" + word[12:].hex())
        elif abi_type == "bool":
            values.append(int.from_bytes(word, "big") != 0)
        elif abi_type == "uint256":
            values.append(int.from_bytes(word, "big"))
        elif abi_type == "bytes32":
            values.append("0x" + word.hex())
        elif abi_type == "string":
            offset = int.from_bytes(word, "big")
            length = int.from_bytes(data[offset : offset + WORD], "big")
            values.append(data[offset + WORD : offset + WORD + length].decode("utf-8"))
        else:
            raise LedgerSchemaError(f"unsupported type {abi_type}")
    return values
