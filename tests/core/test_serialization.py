"""Tests for canonical transaction and block JSON."""

from __future__ import annotations

from dltminer.core.models import Block, Transaction
from dltminer.core.serialization import (
    block_to_json,
    encode_string,
    transaction_lines,
    transaction_to_json,
    transactions_to_json_array,
)


def _tx(**overrides) -> Transaction:
    fields = dict(sender="abc", recipient="def", amount=100, timestamp=1000, signature="sig")
    fields.update(overrides)
    return Transaction(**fields)


class TestTransactionJSON:
    def test_zero_optional_fields_omitted(self) -> None:
        tx = _tx(fee=0, data="", public_key="")
        assert transaction_to_json(tx) == '{"from":"abc","to":"def","amount":100,"timestamp":1000,"signature":"sig"}'

    def test_all_fields_in_wire_order(self) -> None:
        tx = _tx(fee=5, data="memo", public_key="pk")
        assert transaction_to_json(tx) == (
            '{"from":"abc","to":"def","amount":100,"fee":5,"data":"memo",'
            '"timestamp":1000,"signature":"sig","public_key":"pk"}'
        )

    def test_only_fee_present(self) -> None:
        assert transaction_to_json(_tx(fee=1)) == (
            '{"from":"abc","to":"def","amount":100,"fee":1,"timestamp":1000,"signature":"sig"}'
        )

    def test_deterministic(self) -> None:
        tx = _tx(data="x", public_key="y")
        assert transaction_to_json(tx) == transaction_to_json(tx)

    def test_array_and_lines(self) -> None:
        a, b = _tx(), _tx(sender="zzz")
        assert transactions_to_json_array([a, b]) == f"[{transaction_to_json(a)},{transaction_to_json(b)}]"
        assert transaction_lines([a, b]) == f"{transaction_to_json(a)}\n{transaction_to_json(b)}"
        assert transactions_to_json_array([]) == "[]"
        assert transaction_lines([]) == ""


class TestStringEncoding:
    def test_html_characters_escaped(self) -> None:
        assert encode_string("<a&b>") == '"\\u003ca\\u0026b\\u003e"'

    def test_line_separators_escaped(self) -> None:
        assert encode_string("a\u2028b\u2029c") == '"a\\u2028b\\u2029c"'

    def test_non_ascii_kept_raw(self) -> None:
        assert encode_string("café") == '"café"'

    def test_quotes_and_newlines(self) -> None:
        assert encode_string('say "hi"\n') == '"say \\"hi\\"\\n"'


class TestBlockJSON:
    def test_unsolved_block_without_optionals(self) -> None:
        block = Block(index=1, timestamp=2, transactions=[_tx()], previous_hash="p", difficulty=4)
        assert block_to_json(block) == (
            '{"Index":1,"Timestamp":2,"transactions":['
            '{"from":"abc","to":"def","amount":100,"timestamp":1000,"signature":"sig"}],'
            '"PreviousHash":"p","Hash":"","Nonce":0,"Difficulty":4}'
        )

    def test_solved_block_with_optionals(self) -> None:
        block = Block(
            index=6001,
            timestamp=1700000000,
            transactions=[],
            previous_hash="00ff",
            difficulty=6,
            merkle_root="mr",
            hash="00ab",
            nonce=42,
            difficulty_bits=24,
        )
        assert block_to_json(block) == (
            '{"Index":6001,"Timestamp":1700000000,"transactions":[],"MerkleRoot":"mr",'
            '"PreviousHash":"00ff","Hash":"00ab","Nonce":42,"Difficulty":6,"DifficultyBits":24}'
        )
