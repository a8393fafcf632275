"""
Unit Tests for ChainVerifier and Chain Client Helpers

Reliability Level: SOVEREIGN TIER

Tests:
- Transfer log decoding (token contract only, Transfer topic only)
- verify_single_transfer() check order and tolerance boundary
- verify_batch_transfer() sender checks
- is_transient_error() classification
- normalize_receipt() on web3-shaped receipts
- Web3ChainClient signs once and re-sends identical bytes
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests
from hexbytes import HexBytes
from web3 import Web3

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import (
    CUSTODY_ACCOUNT,
    EMPLOYEE_A,
    EMPLOYEE_B,
    TOKEN_ADDRESS,
    USER_ACCOUNT,
    FakeChainClient,
    tx_hash_for,
)
from app.chain.client import (
    SignedTransfer,
    Web3ChainClient,
    is_transient_error,
    is_valid_address,
    normalize_receipt,
)
from app.chain.verifier import TRANSFER_TOPIC, ChainVerifier, decode_transfer_logs
from services.settlement_errors import (
    AmountMismatch,
    ChainFailure,
    ChainTransferError,
    InsufficientCustodyBalance,
    NoTransferFound,
    PartyMismatch,
    TransactionNotFound,
    TransientInfraError,
)

USER = USER_ACCOUNT.address
CUSTODY = CUSTODY_ACCOUNT.address


@pytest.fixture
def verifier(chain) -> ChainVerifier:
    return ChainVerifier(chain, TOKEN_ADDRESS)


class TestDecodeTransferLogs:

    def test_decodes_amount_with_token_decimals(self, chain) -> None:
        receipt = chain.add_transfers(tx_hash_for(1), [(USER, CUSTODY, "5.5")])
        proofs = decode_transfer_logs(receipt, TOKEN_ADDRESS, 18)
        assert len(proofs) == 1
        assert proofs[0].amount == Decimal("5.5")
        assert proofs[0].sender == USER.lower()
        assert proofs[0].recipient == CUSTODY.lower()
        assert proofs[0].raw_amount == 5500000000000000000

    def test_ignores_other_contracts(self, chain) -> None:
        receipt = chain.add_transfers(tx_hash_for(2), [(USER, CUSTODY, "5")])
        receipt["logs"][0]["address"] = "0x" + "99" * 20
        assert decode_transfer_logs(receipt, TOKEN_ADDRESS, 18) == []

    def test_ignores_other_topics(self, chain) -> None:
        receipt = chain.add_transfers(tx_hash_for(3), [(USER, CUSTODY, "5")])
        receipt["logs"][0]["topics"][0] = "0x" + "00" * 32
        assert decode_transfer_logs(receipt, TOKEN_ADDRESS, 18) == []

    def test_transfer_topic_constant(self) -> None:
        assert TRANSFER_TOPIC.startswith("0xddf252ad")


class TestVerifySingleTransfer:

    def test_exact_match(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(10), [(USER, CUSTODY, "100")], block_number=55)
        proof = verifier.verify_single_transfer(tx_hash_for(10), USER, CUSTODY, Decimal("100"))
        assert proof.amount == Decimal("100")
        assert proof.block_number == 55

    def test_within_tolerance(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(11), [(USER, CUSTODY, "100.004")])
        proof = verifier.verify_single_transfer(
            tx_hash_for(11), USER, CUSTODY, Decimal("100"), tolerance=Decimal("0.01")
        )
        assert proof.amount == Decimal("100.004")

    def test_outside_tolerance(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(12), [(USER, CUSTODY, "100.02")])
        with pytest.raises(AmountMismatch) as exc_info:
            verifier.verify_single_transfer(
                tx_hash_for(12), USER, CUSTODY, Decimal("100"), tolerance=Decimal("0.01")
            )
        assert exc_info.value.expected == Decimal("100")
        assert exc_info.value.observed == Decimal("100.02")

    def test_unknown_transaction(self, verifier) -> None:
        with pytest.raises(TransactionNotFound):
            verifier.verify_single_transfer(tx_hash_for(13), USER, CUSTODY, Decimal("1"))

    def test_reverted_transaction(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(14), [(USER, CUSTODY, "1")], status=0)
        with pytest.raises(ChainFailure):
            verifier.verify_single_transfer(tx_hash_for(14), USER, CUSTODY, Decimal("1"))

    def test_no_transfer_event(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(15), [], sender=USER)
        with pytest.raises(NoTransferFound):
            verifier.verify_single_transfer(tx_hash_for(15), USER, CUSTODY, Decimal("1"))

    def test_wrong_recipient(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(16), [(USER, EMPLOYEE_A, "1")])
        with pytest.raises(PartyMismatch) as exc_info:
            verifier.verify_single_transfer(tx_hash_for(16), USER, CUSTODY, Decimal("1"))
        assert exc_info.value.details["observed_to"] == EMPLOYEE_A.lower()

    def test_picks_closest_matching_transfer(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(17), [(USER, CUSTODY, "3"), (USER, CUSTODY, "5")])
        proof = verifier.verify_single_transfer(tx_hash_for(17), USER, CUSTODY, Decimal("5"))
        assert proof.amount == Decimal("5")

    def test_six_decimal_token(self) -> None:
        chain = FakeChainClient(decimals=6)
        six = ChainVerifier(chain, TOKEN_ADDRESS)
        chain.add_transfers(tx_hash_for(18), [(USER, CUSTODY, "2.000001")])
        assert six.verify_single_transfer(
            tx_hash_for(18), USER, CUSTODY, Decimal("2.000001"), tolerance=Decimal("0")
        ).raw_amount == 2000001


class TestVerifyBatchTransfer:

    def test_returns_transfers_from_sender(self, chain, verifier) -> None:
        chain.add_transfers(
            tx_hash_for(20),
            [(USER, EMPLOYEE_A, "10"), (USER, EMPLOYEE_B, "20"), (EMPLOYEE_A, EMPLOYEE_B, "1")],
            sender=USER,
        )
        transfers = verifier.verify_batch_transfer(tx_hash_for(20), USER)
        assert [t.recipient for t in transfers] == [EMPLOYEE_A.lower(), EMPLOYEE_B.lower()]

    def test_transaction_sent_by_someone_else(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(21), [(USER, EMPLOYEE_A, "10")], sender=CUSTODY)
        with pytest.raises(PartyMismatch):
            verifier.verify_batch_transfer(tx_hash_for(21), USER)

    def test_no_transfers_from_sender(self, chain, verifier) -> None:
        chain.add_transfers(tx_hash_for(22), [(EMPLOYEE_A, EMPLOYEE_B, "10")], sender=USER)
        with pytest.raises(NoTransferFound):
            verifier.verify_batch_transfer(tx_hash_for(22), USER)


class TestClientHelpers:

    @pytest.mark.parametrize("message", [
        "502 Bad Gateway",
        "503 Service Unavailable",
        "Request timed out",
        "read ECONNRESET",
    ])
    def test_transient_messages(self, message) -> None:
        assert is_transient_error(Exception(message)) is True

    def test_transport_exceptions_are_transient(self) -> None:
        assert is_transient_error(requests.exceptions.Timeout()) is True
        assert is_transient_error(requests.exceptions.ConnectionError()) is True
        assert is_transient_error(TransientInfraError("rpc down")) is True

    def test_permanent_errors(self) -> None:
        assert is_transient_error(Exception("execution reverted")) is False
        assert is_transient_error(ChainTransferError("Invalid recipient")) is False
        assert is_transient_error(InsufficientCustodyBalance("503 tokens short")) is False

    def test_address_validation(self) -> None:
        assert is_valid_address(USER) is True
        assert is_valid_address(USER.lower()) is True
        assert is_valid_address("0x1234") is False
        assert is_valid_address(None) is False

    def test_normalize_receipt(self) -> None:
        raw = {
            "transactionHash": HexBytes("0x" + "ab" * 32),
            "status": 1,
            "blockNumber": 99,
            "from": USER,
            "to": TOKEN_ADDRESS,
            "logs": [{
                "address": TOKEN_ADDRESS,
                "topics": [HexBytes(TRANSFER_TOPIC), HexBytes("0x" + "00" * 12 + USER[2:].lower())],
                "data": HexBytes("0x" + format(7, "064x")),
                "logIndex": 3,
            }],
        }
        receipt = normalize_receipt(raw)
        assert receipt["transaction_hash"] == "0x" + "ab" * 32
        assert receipt["block_number"] == 99
        assert receipt["logs"][0]["topics"][0] == TRANSFER_TOPIC
        assert int(receipt["logs"][0]["data"], 16) == 7
        assert receipt["logs"][0]["log_index"] == 3


class TestWeb3ChainClientTransfers:

    @pytest.fixture
    def client(self) -> Web3ChainClient:
        client = Web3ChainClient("http://127.0.0.1:8545", TOKEN_ADDRESS, "0x" + "11" * 32)
        client.web3 = MagicMock()
        client.contract = MagicMock()
        client._decimals = 18
        return client

    @staticmethod
    def _signed(nonce: int = 3) -> SignedTransfer:
        return SignedTransfer(
            tx_hash=tx_hash_for(nonce),
            raw_transaction=b"\x02signed",
            nonce=nonce,
            to_address=USER,
            amount=Decimal("5"),
        )

    def test_prepare_signs_without_sending(self, client) -> None:
        client.contract.functions.balanceOf.return_value.call.return_value = 10 ** 30
        client.web3.eth.get_transaction_count.return_value = 7
        client.contract.functions.transfer.return_value.build_transaction.return_value = {
            "to": TOKEN_ADDRESS,
            "value": 0,
            "gas": 60000,
            "gasPrice": 10 ** 9,
            "nonce": 7,
            "chainId": 1,
            "data": "0x",
        }

        signed = client.prepare_transfer(USER, Decimal("5"))

        assert signed.nonce == 7
        assert signed.tx_hash == Web3.to_hex(Web3.keccak(signed.raw_transaction))
        client.web3.eth.send_raw_transaction.assert_not_called()

    def test_prepare_checks_custody_balance(self, client) -> None:
        client.contract.functions.balanceOf.return_value.call.return_value = 1
        with pytest.raises(InsufficientCustodyBalance):
            client.prepare_transfer(USER, Decimal("5"))
        client.contract.functions.transfer.assert_not_called()

    def test_resend_uses_same_bytes(self, client) -> None:
        transfer = self._signed()
        client.web3.eth.send_raw_transaction.side_effect = [
            requests.exceptions.ReadTimeout("read timed out"),
            HexBytes(transfer.tx_hash),
        ]

        with pytest.raises(requests.exceptions.ReadTimeout):
            client.broadcast_transfer(transfer)
        assert client.broadcast_transfer(transfer) == transfer.tx_hash

        sent = [call.args[0] for call in client.web3.eth.send_raw_transaction.call_args_list]
        assert sent == [transfer.raw_transaction, transfer.raw_transaction]

    @pytest.mark.parametrize("message", ["already known", "known transaction: 0xabc", "nonce too low"])
    def test_node_already_has_transaction(self, client, message) -> None:
        transfer = self._signed()
        client.web3.eth.send_raw_transaction.side_effect = ValueError({"code": -32000, "message": message})

        assert client.broadcast_transfer(transfer) == transfer.tx_hash

    def test_other_send_errors_propagate(self, client) -> None:
        client.web3.eth.send_raw_transaction.side_effect = ValueError("insufficient funds for gas")
        with pytest.raises(ValueError):
            client.broadcast_transfer(self._signed())
