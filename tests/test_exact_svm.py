import base64
import hashlib

import pytest
from solders.keypair import Keypair

from tests.fakes import (
    SOLANA_NETWORK,
    FakeSolanaChain,
    make_svm_facilitator,
    make_svm_requirements,
    sign_spl_transfer,
)
from x402_facilitator.errors import (
    ASSET_MISMATCH,
    INSUFFICIENT_AMOUNT,
    INSUFFICIENT_AMOUNT_RECEIVED,
    INSUFFICIENT_FEE_FUNDS,
    INVALID_PAYLOAD,
    INVALID_SIGNATURE,
    RECIPIENT_MISMATCH,
    TIMEOUT,
    TRANSACTION_REVERTED,
    SemanticValidationError,
    TransportError,
)
from x402_facilitator.facilitator import Facilitator
from x402_facilitator.schemas import PaymentPayload
from x402_facilitator.schemes.exact_svm import ExactSvmVerifier, decode_svm_payload
from x402_facilitator.solana import derive_ata


@pytest.fixture
def mint() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def merchant() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def svm_payer() -> Keypair:
    return Keypair()


@pytest.fixture
def svm_chain(mint: str, merchant: str) -> FakeSolanaChain:
    chain = FakeSolanaChain()
    chain.open_account(merchant, mint)
    return chain


@pytest.fixture
def svm_facilitator(svm_chain: FakeSolanaChain) -> Facilitator:
    return make_svm_facilitator(svm_chain)


@pytest.fixture
def verifier() -> ExactSvmVerifier:
    return ExactSvmVerifier(SOLANA_NETWORK)


def _raw_payload(raw: bytes) -> PaymentPayload:
    return PaymentPayload(
        x402_version=1,
        scheme="exact",
        network=SOLANA_NETWORK,
        payload={"transaction": base64.b64encode(raw).decode("ascii")},
    )


def test_valid_transfer(verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    outcome = verifier.verify(payment, requirements)

    assert outcome.is_valid
    assert outcome.payer == str(svm_payer.pubkey())
    decoded = decode_svm_payload(payment.payload)
    assert outcome.idempotency_key == hashlib.sha256(decoded.signature_bytes).digest()
    assert verifier.idempotency_key(payment) == outcome.idempotency_key


def test_transfer_checked_and_serialized_transaction_field(
    verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(
        svm_payer, requirements, 1_500_000, checked=True, payload_key="serializedTransaction"
    )

    assert verifier.verify(payment, requirements).is_valid


def test_transfer_to_token_account_given_as_pay_to(
    verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    token_account = derive_ata(merchant, mint)
    requirements = make_svm_requirements(mint, token_account)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000, destination=token_account)

    assert verifier.verify(payment, requirements).is_valid


def test_underpayment(verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 999_999)

    assert verifier.verify(payment, requirements).invalid_reason == INSUFFICIENT_AMOUNT


def test_wrong_token_account(verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str) -> None:
    requirements = make_svm_requirements(mint, merchant)
    elsewhere = derive_ata(str(Keypair().pubkey()), mint)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000, destination=elsewhere)

    assert verifier.verify(payment, requirements).invalid_reason == RECIPIENT_MISMATCH


def test_wrong_mint(verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000, checked=True, mint=str(Keypair().pubkey()))

    assert verifier.verify(payment, requirements).invalid_reason == ASSET_MISMATCH


def test_tampered_signature(verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)
    raw = bytearray(base64.b64decode(payment.payload["transaction"]))
    # Byte 0 is the signature count; the first signature follows
    raw[1] ^= 0x01

    assert verifier.verify(_raw_payload(bytes(raw)), requirements).invalid_reason == INVALID_SIGNATURE


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"transaction": "not base64!"},
        {"transaction": base64.b64encode(b"\x01\x02\x03").decode("ascii")},
    ],
)
def test_malformed_payloads(verifier: ExactSvmVerifier, mint: str, merchant: str, payload: dict) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = PaymentPayload(x402_version=1, scheme="exact", network=SOLANA_NETWORK, payload=payload)

    assert verifier.verify(payment, requirements).invalid_reason == INVALID_PAYLOAD
    with pytest.raises(SemanticValidationError):
        verifier.idempotency_key(payment)


def test_pay_to_must_be_solana_address(
    verifier: ExactSvmVerifier, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    payment = sign_spl_transfer(svm_payer, make_svm_requirements(mint, merchant), 1_000_000)
    evm_requirements = make_svm_requirements(mint, "0x209693bc6afc0c5328ba36faf03c514ef312287c")

    assert verifier.verify(payment, evm_requirements).invalid_reason == RECIPIENT_MISMATCH


def test_fee_payer_must_afford_fees(svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str) -> None:
    verifier = ExactSvmVerifier(SOLANA_NETWORK, chain=svm_chain)
    sponsor = Keypair()
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000, fee_payer=sponsor)

    svm_chain.balances[str(svm_payer.pubkey())] = 0
    outcome = verifier.verify(payment, requirements)
    assert outcome.is_valid
    assert outcome.payer == str(svm_payer.pubkey())

    svm_chain.balances[str(sponsor.pubkey())] = 9_999
    assert verifier.verify(payment, requirements).invalid_reason == INSUFFICIENT_FEE_FUNDS

    svm_chain.balances[str(sponsor.pubkey())] = 10_000
    assert verifier.verify(payment, requirements).is_valid


def test_settles_once(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    first = svm_facilitator.settle(payment, requirements)
    second = svm_facilitator.settle(payment, requirements)

    assert first.success
    assert first.tx_hash == decode_svm_payload(payment.payload).signature
    assert first.network_id == SOLANA_NETWORK
    assert first.payer == str(svm_payer.pubkey())
    assert second == first
    assert len(svm_chain.submissions) == 1


def test_settled_transfer_is_answered_after_fee_payer_drained(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    first = svm_facilitator.settle(payment, requirements)
    svm_chain.balances[str(svm_payer.pubkey())] = 0

    assert not svm_facilitator.verify(payment, requirements).is_valid
    assert svm_facilitator.settle(payment, requirements) == first
    assert len(svm_chain.submissions) == 1


def test_delivered_amount_is_read_from_balance_delta(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    svm_chain.transfer_fee = 1
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    outcome = svm_facilitator.settle(payment, requirements)

    assert not outcome.success
    assert outcome.error == INSUFFICIENT_AMOUNT_RECEIVED
    assert outcome.tx_hash is not None


def test_failed_transaction(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    svm_chain.fail_transactions = True
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    assert svm_facilitator.settle(payment, requirements).error == TRANSACTION_REVERTED


def test_unconfirmed_then_confirmed(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    svm_chain.hold_receipts = True
    requirements = make_svm_requirements(mint, merchant, max_timeout_seconds=1)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)
    key = svm_facilitator.verify(payment, requirements).idempotency_key

    pending = svm_facilitator.settle(payment, requirements)
    assert pending.pending
    assert pending.error == TIMEOUT

    svm_chain.release_receipts()
    assert svm_facilitator.lookup(key).success
    assert len(svm_chain.submissions) == 1


def test_unreachable_cluster_keeps_transaction_for_retry(
    svm_facilitator: Facilitator, svm_chain: FakeSolanaChain, svm_payer: Keypair, mint: str, merchant: str
) -> None:
    svm_chain.fail_sends = 1
    requirements = make_svm_requirements(mint, merchant)
    payment = sign_spl_transfer(svm_payer, requirements, 1_000_000)

    with pytest.raises(TransportError):
        svm_facilitator.settle(payment, requirements)
    outcome = svm_facilitator.settle(payment, requirements)

    assert outcome.success
    assert len(svm_chain.submissions) == 1
    assert svm_chain.abandoned == []
