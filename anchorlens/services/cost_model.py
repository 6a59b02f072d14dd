"""
Static compute-unit estimate per instruction.

The weights are coarse averages of what the runtime charges for each kind of
work. They only need to be stable and roughly proportional; the cost pass and
the overflow + budget correlation compare them against a configured budget.
"""

import logging
from typing import Dict

from anchorlens.models import AccountKind, BumpSource, InstructionDecl, OpKind, ProgramModel

logger = logging.getLogger("anchorlens.cost_model")

BASE_COST = 1_000
LOOP_FACTOR = 10

ACCOUNT_COST: Dict[AccountKind, int] = {
    AccountKind.TYPED: 400,   # deserialize + discriminator + owner check
    AccountKind.RAW: 100,
    AccountKind.SIGNER: 100,
    AccountKind.PROGRAM: 100,
}

OP_COST: Dict[OpKind, int] = {
    OpKind.STATE_MUTATION: 100,
    OpKind.VALIDATION: 50,
    OpKind.CPI_CALL: 3_000,
    OpKind.EVENT_EMISSION: 600,
    OpKind.DESERIALIZE: 400,
    OpKind.LOG: 500,
}

CPI_ACCOUNT_COST = 150
INIT_ACCOUNT_COST = 5_000        # create_account CPI
PDA_DERIVATION_COST = 1_500      # one find_program_address attempt
UNCHECKED_ARITH_COST = 5
CHECKED_ARITH_COST = 15


def estimate_instruction_cost(model: ProgramModel, instr: InstructionDecl) -> int:
    cost = BASE_COST

    for acct in model.accounts_for(instr):
        cost += ACCOUNT_COST[acct.kind]
        if acct.constraints.init:
            cost += INIT_ACCOUNT_COST

    for op in instr.operations:
        weight = OP_COST[op.kind]
        cost += weight * LOOP_FACTOR if op.in_loop else weight

    for call in model.cpi_edges:
        if call.instruction == instr.name:
            cost += CPI_ACCOUNT_COST * len(call.accounts)

    for pda in model.pda_derivations:
        if pda.bump_source != BumpSource.REDERIVED:
            continue
        if pda.instruction == instr.name or (
            pda.account.split(".")[0] == instr.context and "." in pda.account
        ):
            cost += PDA_DERIVATION_COST

    for site in model.arithmetic_sites:
        if site.instruction == instr.name:
            cost += CHECKED_ARITH_COST if site.checked else UNCHECKED_ARITH_COST

    return cost


def estimate_costs(model: ProgramModel) -> Dict[str, int]:
    costs = {instr.name: estimate_instruction_cost(model, instr) for instr in model.instructions}
    logger.debug(f"Estimated compute units: {costs}")
    return costs
