"""Deposit lifecycle state graph.

One instance of the data the traversal engine consumes. Everything here talks
to the external system through fixtures supplied by the runner:

* contract clients `tbtc_system`, `tbtc_constants`, `deposit_factory`,
  `ecdsa_keep`, `mock_relay`, `tbtc_token`, `deposit_token`, `price_feed`;
  view methods are coroutines, transaction methods return an operation for
  the submitter;
* `deposit_at(address)` binding a deposit client to a clone address;
* `opener`, the account that opens and redeems the deposit;
* `round_trip`, a `DepositRoundTrip` with the signer key and Bitcoin proofs;
* `advance_time(seconds)`, moving the dev chain clock;
* `send(operation)`, submitting a setup transaction (provided by the driver).
"""

from enum import IntEnum
from typing import Any

from pydantic import BaseModel

from statecheck.engine.context import Context
from statecheck.engine.graph import Effect, StateGraph, StateNode, TransitionSpec
from statecheck.engine.verifier import expect_equal, expect_event


class DepositState(IntEnum):
    START = 0
    AWAITING_SIGNER_SETUP = 1
    AWAITING_BTC_FUNDING_PROOF = 2
    FAILED_SETUP = 3
    ACTIVE = 4
    AWAITING_WITHDRAWAL_SIGNATURE = 5
    AWAITING_WITHDRAWAL_PROOF = 6
    REDEEMED = 7
    COURTESY_CALL = 8
    FRAUD_LIQUIDATION_IN_PROGRESS = 9
    LIQUIDATION_IN_PROGRESS = 10
    LIQUIDATED = 11


class SignerPubkey(BaseModel):
    x: str
    y: str

    @property
    def concatenated(self) -> str:
        return "0x" + self.x.removeprefix("0x") + self.y.removeprefix("0x")


class FundingProof(BaseModel):
    version: str
    tx_input_vector: str
    tx_output_vector: str
    tx_locktime: str
    funding_output_index: int
    merkle_proof: str
    tx_index_in_block: int
    bitcoin_headers: str
    difficulty: int


class RedemptionProof(BaseModel):
    version: str
    tx_input_vector: str
    tx_output_vector: str
    tx_locktime: str
    merkle_proof: str
    tx_index_in_block: int
    bitcoin_headers: str
    output_value_bytes: str
    output_script: str


class DepositRoundTrip(BaseModel):
    signer_pubkey: SignerPubkey
    funding_tx: FundingProof
    redemption_tx: RedemptionProof


# Dependencies


async def lot_size(ctx: Context) -> int:
    return (await ctx.tbtc_system.get_allowed_lot_sizes())[0]


async def fee_estimate(ctx: Context) -> int:
    return await ctx.tbtc_system.get_new_deposit_fee_estimate()


async def expected_bond(ctx: Context) -> int:
    lot = await ctx.deposit.lot_size_satoshis()
    initial = await ctx.tbtc_system.get_initial_collateralized_percent()
    price = await ctx.tbtc_system.fetch_bitcoin_price()
    return price * lot * initial // 100


async def funding_difficulty(ctx: Context) -> int:
    return ctx.round_trip.funding_tx.difficulty


# Setup steps


async def set_ecdsa_key(ctx: Context) -> None:
    await ctx.send(ctx.ecdsa_keep.set_public_key(ctx.round_trip.signer_pubkey.concatenated))


async def set_up_bond(ctx: Context) -> None:
    await ctx.send(ctx.ecdsa_keep.fund(ctx.bond_amount))
    await ctx.send(ctx.ecdsa_keep.set_bond_amount(ctx.bond_amount))


async def pass_signer_setup_timeout(ctx: Context) -> None:
    timeout = await ctx.tbtc_constants.get_signing_group_formation_timeout()
    await ctx.advance_time(timeout + 1)
    await set_up_bond(ctx)


async def set_difficulty(ctx: Context) -> None:
    await ctx.send(ctx.mock_relay.set_current_epoch_difficulty(ctx.difficulty))


async def set_and_approve_redemption_balance(ctx: Context) -> None:
    requirement = await ctx.deposit.get_redemption_tbtc_requirement(ctx.opener)
    await ctx.send(ctx.tbtc_token.force_mint(ctx.opener, requirement))
    await ctx.send(ctx.tbtc_token.approve(ctx.deposit.address, requirement, sender=ctx.opener))


async def _price_for_threshold(ctx: Context, percent: int) -> int:
    bond = await ctx.ecdsa_keep.check_bond_amount()
    lot = await ctx.deposit.lot_size_satoshis()
    return bond // (lot * percent // 100)


async def set_well_collateralized(ctx: Context) -> None:
    await set_up_bond(ctx)
    initial = await ctx.deposit.get_initial_collateralized_percent()
    await ctx.send(ctx.price_feed.set_price(await _price_for_threshold(ctx, initial)))


async def set_undercollateralized(ctx: Context) -> None:
    await set_up_bond(ctx)
    under = await ctx.deposit.get_undercollateralized_threshold_percent()
    await ctx.send(ctx.price_feed.set_price(await _price_for_threshold(ctx, under - 1)))


async def set_severely_undercollateralized(ctx: Context) -> None:
    await set_up_bond(ctx)
    severe = await ctx.deposit.get_severely_undercollateralized_threshold_percent()
    await ctx.send(ctx.price_feed.set_price(await _price_for_threshold(ctx, severe - 1)))


def _state_is(ctx: Context, expected: DepositState):
    return expect_equal("deposit.get_current_state()", ctx.deposit.get_current_state, expected)


# Transitions


async def create_deposit(ctx: Context) -> Effect:
    def resolve_deposit(resolver_ctx: Context, receipt) -> Any:
        created = receipt.events_named("DepositCloneCreated")
        if not created:
            raise LookupError("DepositCloneCreated not emitted")
        return resolver_ctx.deposit_at(created[0].args["depositCloneAddress"])

    return Effect(
        operation=ctx.deposit_factory.create_deposit(ctx.lot_size, value=ctx.fee_estimate, sender=ctx.opener),
        resolve_subject=resolve_deposit,
        subject_key="deposit",
        declared_state="awaitingSignerSetup",
    )


async def expect_created(_, receipt, ctx: Context) -> list:
    return [
        expect_event(receipt, "DepositCloneCreated", depositCloneAddress=ctx.deposit.address),
        expect_event(
            receipt,
            "Created",
            _depositContractAddress=ctx.deposit.address,
            _keepAddress=ctx.ecdsa_keep.address,
        ),
        _state_is(ctx, DepositState.AWAITING_SIGNER_SETUP),
        expect_equal(
            "deposit_token.owner_of(deposit)",
            lambda: ctx.deposit_token.owner_of(ctx.deposit.address),
            ctx.opener,
        ),
    ]


async def retrieve_signer_pubkey(ctx: Context) -> Effect:
    return Effect(ctx.deposit.retrieve_signer_pubkey(), declared_state="awaitingFundingProof")


async def expect_registered_pubkey(_, receipt, ctx: Context) -> list:
    pubkey = ctx.round_trip.signer_pubkey
    return [
        expect_event(
            receipt,
            "RegisteredPubkey",
            _depositContractAddress=ctx.deposit.address,
            _signingGroupPubkeyX=pubkey.x,
            _signingGroupPubkeyY=pubkey.y,
        ),
        _state_is(ctx, DepositState.AWAITING_BTC_FUNDING_PROOF),
    ]


async def notify_signer_setup_failure(ctx: Context) -> Effect:
    return Effect(ctx.deposit.notify_signer_setup_failure(), declared_state="signerSetupFailure")


async def expect_setup_failed(_, receipt, ctx: Context) -> list:
    return [
        expect_event(receipt, "SetupFailed", _depositContractAddress=ctx.deposit.address),
        _state_is(ctx, DepositState.FAILED_SETUP),
    ]


async def provide_funding_proof(ctx: Context) -> Effect:
    return Effect(ctx.deposit.provide_btc_funding_proof(ctx.round_trip.funding_tx), declared_state="active")


async def expect_funded(_, receipt, ctx: Context) -> list:
    return [expect_event(receipt, "Funded"), _state_is(ctx, DepositState.ACTIVE)]


async def request_redemption(ctx: Context) -> Effect:
    redemption = ctx.round_trip.redemption_tx
    return Effect(
        ctx.deposit.request_redemption(redemption.output_value_bytes, redemption.output_script, sender=ctx.opener),
        declared_state="awaitingWithdrawalSignature",
    )


async def expect_redemption_requested(_, receipt, ctx: Context) -> list:
    return [
        expect_event(receipt, "RedemptionRequested"),
        _state_is(ctx, DepositState.AWAITING_WITHDRAWAL_SIGNATURE),
    ]


async def provide_redemption_proof(ctx: Context) -> Effect:
    return Effect(ctx.deposit.provide_redemption_proof(ctx.round_trip.redemption_tx), declared_state="redeemed")


async def expect_redeemed(_, receipt, ctx: Context) -> list:
    return [expect_event(receipt, "Redeemed"), _state_is(ctx, DepositState.REDEEMED)]


async def notify_courtesy_call(ctx: Context) -> Effect:
    return Effect(ctx.deposit.notify_courtesy_call(), declared_state="courtesyCall")


async def expect_courtesy_called(_, receipt, ctx: Context) -> list:
    return [expect_event(receipt, "CourtesyCalled"), _state_is(ctx, DepositState.COURTESY_CALL)]


async def notify_undercollateralized_liquidation(ctx: Context) -> Effect:
    return Effect(ctx.deposit.notify_undercollateralized_liquidation(), declared_state="liquidationInProgress")


async def expect_started_liquidation(_, receipt, ctx: Context) -> list:
    return [
        expect_event(receipt, "StartedLiquidation"),
        _state_is(ctx, DepositState.LIQUIDATION_IN_PROGRESS),
    ]


async def exit_courtesy_call(ctx: Context) -> Effect:
    return Effect(ctx.deposit.exit_courtesy_call(), declared_state="active")


async def expect_exited_courtesy_call(_, receipt, ctx: Context) -> list:
    return [expect_event(receipt, "ExitedCourtesyCall"), _state_is(ctx, DepositState.ACTIVE)]


NODES = [
    StateNode(
        name="start",
        dependencies={"lot_size": lot_size, "fee_estimate": fee_estimate},
        transitions={
            "awaitingSignerSetup": TransitionSpec(action=create_deposit, expectation=expect_created),
        },
    ),
    StateNode(
        name="awaitingSignerSetup",
        dependencies={"bond_amount": expected_bond},
        transitions={
            "awaitingFundingProof": TransitionSpec(
                precondition=set_ecdsa_key,
                action=retrieve_signer_pubkey,
                expectation=expect_registered_pubkey,
            ),
            "signerSetupFailure": TransitionSpec(
                precondition=pass_signer_setup_timeout,
                action=notify_signer_setup_failure,
                expectation=expect_setup_failed,
            ),
        },
        invalid_transitions={
            "signerSetupFailure too early": TransitionSpec(action=notify_signer_setup_failure),
        },
    ),
    StateNode(
        name="awaitingFundingProof",
        dependencies={"bond_amount": expected_bond, "difficulty": funding_difficulty},
        transitions={
            "active": TransitionSpec(
                precondition=set_difficulty,
                action=provide_funding_proof,
                expectation=expect_funded,
            ),
        },
    ),
    StateNode(
        name="active",
        dependencies={"bond_amount": expected_bond},
        transitions={
            "awaitingWithdrawalSignature": TransitionSpec(
                precondition=set_and_approve_redemption_balance,
                action=request_redemption,
                expectation=expect_redemption_requested,
            ),
            "courtesyCall": TransitionSpec(
                precondition=set_undercollateralized,
                action=notify_courtesy_call,
                expectation=expect_courtesy_called,
            ),
            "liquidationInProgress": TransitionSpec(
                precondition=set_severely_undercollateralized,
                action=notify_undercollateralized_liquidation,
                expectation=expect_started_liquidation,
            ),
        },
    ),
    StateNode(
        name="awaitingWithdrawalSignature",
        transitions={
            "redeemed": TransitionSpec(action=provide_redemption_proof, expectation=expect_redeemed),
        },
    ),
    StateNode(
        name="courtesyCall",
        dependencies={"bond_amount": expected_bond},
        transitions={
            "active": TransitionSpec(
                precondition=set_well_collateralized,
                action=exit_courtesy_call,
                expectation=expect_exited_courtesy_call,
            ),
        },
    ),
    StateNode(name="signerSetupFailure"),
    StateNode(name="redeemed"),
    StateNode(name="liquidationInProgress"),
]

deposit_graph = StateGraph("deposit", NODES, root="start")
