import pytest
from eth_abi import decode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from airkeeper.chain_reader import GasTarget
from airkeeper.constants import DAPI_SERVER, PROTOCOL_ID_KEEPER
from airkeeper.exceptions import SubmissionFailed
from airkeeper.transaction_core import TransactionCore
from airkeeper.wallet import derive_wallet

from conftest import FAST_RETRY, SPONSOR_A, SPONSOR_B, TEMPLATE_ID, FakeContractClient, make_job, make_keeper_job

GAS = GasTarget("eip1559", 500_000, max_fee_per_gas=100, max_priority_fee_per_gas=3)


@pytest.fixture
def dapi_server(registry):
    return FakeContractClient(DAPI_SERVER, registry)


@pytest.fixture
def sponsor_wallet(seed):
    return derive_wallet(seed, SPONSOR_A)


@pytest.fixture
def transaction_core(dapi_server, airnode_wallet):
    return TransactionCore(dapi_server, airnode_wallet, "31337", retry=FAST_RETRY)


def test_fulfillment_signature_recovers_airnode(transaction_core, airnode_wallet, sponsor_wallet):
    job = make_job(airnode_wallet.address)
    signature = transaction_core.sign_fulfillment(job.id, 1_650_000_000, sponsor_wallet.address)
    message_hash = Web3.solidity_keccak(
        ["bytes32", "uint256", "address"], [job.id, 1_650_000_000, sponsor_wallet.address]
    )
    recovered = Account.recover_message(encode_defunct(primitive=message_hash), signature=signature)
    assert recovered == airnode_wallet.address


@pytest.mark.asyncio
async def test_submit_uses_given_nonce_and_gas(transaction_core, dapi_server, airnode_wallet, sponsor_wallet):
    job = make_job(airnode_wallet.address)
    submission = await transaction_core.submit(sponsor_wallet, 9, job, 723392028, GAS, timestamp=1_650_000_000)

    assert submission.nonce == 9
    assert submission.broadcast is True
    (sent,) = dapi_server.submissions
    assert sent["from"] == sponsor_wallet.address
    assert sent["function"] == "fulfillPspBeaconUpdate"
    assert sent["tx_params"] == {
        "gas": 500_000,
        "maxFeePerGas": 100,
        "maxPriorityFeePerGas": 3,
        "nonce": 9,
        "chainId": 31337,
    }
    subscription_id, airnode, relayer, sponsor, timestamp, data, signature = sent["args"]
    assert subscription_id == job.id
    assert airnode == airnode_wallet.address
    assert sponsor == Web3.to_checksum_address(SPONSOR_A)
    assert timestamp == 1_650_000_000
    assert decode(["int256"], data) == (723392028,)
    assert len(signature) == 65


@pytest.mark.asyncio
async def test_dry_run_does_not_broadcast(dapi_server, airnode_wallet, sponsor_wallet):
    core = TransactionCore(dapi_server, airnode_wallet, "31337", retry=FAST_RETRY, dry_run=True)
    submission = await core.submit(sponsor_wallet, 0, make_job(airnode_wallet.address), 1, GAS)
    assert submission.broadcast is False
    assert dapi_server.submissions[0]["broadcast"] is False


@pytest.mark.asyncio
async def test_broadcast_failure_reports_consumed_nonce(transaction_core, dapi_server, airnode_wallet, sponsor_wallet):
    dapi_server.failing_nonces.add(4)
    with pytest.raises(SubmissionFailed) as excinfo:
        await transaction_core.submit(sponsor_wallet, 4, make_job(airnode_wallet.address), 1, GAS)
    assert excinfo.value.nonce == 4
    assert dapi_server.submissions == []


@pytest.mark.asyncio
async def test_unknown_fulfill_function_fails_submission(transaction_core, airnode_wallet, sponsor_wallet):
    import dataclasses

    job = dataclasses.replace(make_job(airnode_wallet.address), fulfill_function_id="0xdeadbeef")
    with pytest.raises(SubmissionFailed) as excinfo:
        await transaction_core.submit(sponsor_wallet, 2, job, 1, GAS)
    assert excinfo.value.nonce == 2


@pytest.mark.asyncio
async def test_keeper_job_sends_rrp_update_request(transaction_core, dapi_server, airnode_wallet, seed):
    keeper_wallet = derive_wallet(seed, SPONSOR_B, PROTOCOL_ID_KEEPER)
    job = make_keeper_job(airnode_wallet.address)

    submission = await transaction_core.submit(keeper_wallet, 4, job, 723392028, GAS)

    assert submission.nonce == 4
    (sent,) = dapi_server.submissions
    assert sent["from"] == keeper_wallet.address
    assert sent["function"] == "requestRrpBeaconUpdate"
    assert sent["args"] == (airnode_wallet.address, TEMPLATE_ID, Web3.to_checksum_address(SPONSOR_A))
