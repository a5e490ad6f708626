# constants.py
"""
Airkeeper – Constants
=====================
Protocol and RPC limits shared by the keeper components.
"""

# number of past blocks scanned for beacon update events
BLOCK_COUNT_HISTORY_LIMIT: int = 300

# retry / timeout discipline for every network call
DEFAULT_RETRY_ATTEMPTS: int = 2  # one original attempt + one retry
DEFAULT_RETRY_TIMEOUT: float = 5.0  # seconds per attempt
DEFAULT_RETRY_DELAY: float = 0.05  # seconds between attempts

# deviation and thresholds are fixed point with this many units per percent;
# a job threshold is stored in its conditions as abi.encode(uint256) at this scale
DEVIATION_UNITS_PER_PERCENT: int = 10 ** 16

# gas
GAS_LIMIT: int = 500_000
PRIORITY_FEE_IN_WEI: int = 3_120_000_000
BASE_FEE_MULTIPLIER: int = 2

# sponsor wallet derivation
PROTOCOL_ID_RRP: str = "1"
PROTOCOL_ID_PSP: str = "2"
# keeper wallets that send RRP update requests on behalf of a keeper sponsor
PROTOCOL_ID_KEEPER: str = "12345"
MASTER_WALLET_PATH: str = "m/44'/60'/0'/0/0"
SPONSOR_WALLET_ROOT: str = "m/44'/60'/0'"
PATH_SEGMENT_BITS: int = 31
PATH_SEGMENT_COUNT: int = 6

# contract names as they appear in the chain configuration
DAPI_SERVER: str = "DapiServer"
AIRNODE_RRP: str = "AirnodeRrp"

# on-chain events used for pending-update detection
REQUESTED_UPDATE_EVENT: str = "RequestedRrpBeaconUpdate"
FULFILLED_UPDATE_EVENT: str = "UpdatedBeaconWithRrp"

# DapiServer calls
FULFILL_PSP_FUNCTION: str = "fulfillPspBeaconUpdate"
REQUEST_RRP_FUNCTION: str = "requestRrpBeaconUpdate"
