"""
Access policy — capability checks evaluated at each operation boundary.

Business logic never inspects roles directly; it calls
``policy.require(caller, Action.X)`` once at the top of an operation.
Position ownership (trader == caller) is checked by the engine itself.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Set

from loguru import logger

from core.errors import AuthorizationError


class Role(Enum):
    GOV = "gov"
    MANAGER = "manager"
    BOT = "bot"
    PNL_FEEDER = "pnl_feeder"
    PNL_HANDLER = "pnl_handler"


class Action(Enum):
    MANAGE_ROLES = "manage_roles"
    ADD_GROUP = "add_group"
    ADD_FEE = "add_fee"
    ADD_PAIR = "add_pair"
    UPDATE_PAIR = "update_pair"
    SET_MAX_OPEN_INTEREST = "set_max_open_interest"
    SET_SL_TP = "set_sl_tp"
    SET_PAIR_PARAMS = "set_pair_params"
    SET_MAX_NEGATIVE_PNL = "set_max_negative_pnl"
    SET_TRADING_STATE = "set_trading_state"
    CLAIM_PLATFORM_FEE = "claim_platform_fee"
    REGISTER_ORACLE_NODE = "register_oracle_node"
    EXECUTE_BOT_ORDER = "execute_bot_order"
    EXECUTE_ADL = "execute_adl"
    RUN_VAULT_REQUEST = "run_vault_request"
    MOVE_VAULT_ASSETS = "move_vault_assets"


_ACTION_ROLE: Dict[Action, Role] = {
    Action.MANAGE_ROLES: Role.GOV,
    Action.ADD_GROUP: Role.GOV,
    Action.ADD_FEE: Role.GOV,
    Action.ADD_PAIR: Role.GOV,
    Action.UPDATE_PAIR: Role.GOV,
    Action.SET_MAX_OPEN_INTEREST: Role.GOV,
    Action.SET_SL_TP: Role.GOV,
    Action.SET_TRADING_STATE: Role.GOV,
    Action.CLAIM_PLATFORM_FEE: Role.GOV,
    Action.REGISTER_ORACLE_NODE: Role.GOV,
    Action.SET_PAIR_PARAMS: Role.MANAGER,
    Action.SET_MAX_NEGATIVE_PNL: Role.MANAGER,
    Action.EXECUTE_BOT_ORDER: Role.BOT,
    Action.EXECUTE_ADL: Role.BOT,
    Action.RUN_VAULT_REQUEST: Role.PNL_FEEDER,
    Action.MOVE_VAULT_ASSETS: Role.PNL_HANDLER,
}

# Reason codes surfaced to callers, kept identical to what bots match on.
_DENIAL_REASON: Dict[Role, str] = {
    Role.GOV: "NOT_GOV",
    Role.MANAGER: "NOT_MANAGER",
    Role.BOT: "NOT_BOT",
    Role.PNL_FEEDER: "not feed address",
    Role.PNL_HANDLER: "not pnl handler",
}


class AccessPolicy:
    """
    Role registry implementing ``authorize(caller, action) -> bool``.

    The governance address always holds GOV and MANAGER.
    """

    def __init__(self, gov: str):
        self.gov = gov
        self._members: Dict[Role, Set[str]] = {role: set() for role in Role}
        self._members[Role.GOV].add(gov)
        self._members[Role.MANAGER].add(gov)

    def authorize(self, caller: str, action: Action) -> bool:
        return caller in self._members[_ACTION_ROLE[action]]

    def require(self, caller: str, action: Action) -> None:
        if not self.authorize(caller, action):
            role = _ACTION_ROLE[action]
            logger.warning(f"Denied {action.value} for {caller} (needs {role.value})")
            raise AuthorizationError(_DENIAL_REASON[role], f"{caller} cannot {action.value}")

    def has_role(self, account: str, role: Role) -> bool:
        return account in self._members[role]

    def members(self, role: Role) -> Set[str]:
        return set(self._members[role])

    def grant(self, caller: str, role: Role, accounts: Iterable[str]) -> None:
        self.require(caller, Action.MANAGE_ROLES)
        for account in accounts:
            self._members[role].add(account)
            logger.info(f"Granted {role.value} to {account}")

    def revoke(self, caller: str, role: Role, accounts: Iterable[str]) -> None:
        self.require(caller, Action.MANAGE_ROLES)
        for account in accounts:
            if role is Role.GOV and account == self.gov:
                continue
            self._members[role].discard(account)
            logger.info(f"Revoked {role.value} from {account}")
