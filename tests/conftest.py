import pytest


# Authority checked with has_one but never required to sign.
VAULT_UNSIGNED = """use anchor_lang::prelude::*;

declare_id!("Fg6PaFpoGXkYsidMpWTK6W2BeZ7FEfcYkg476zPFsLnS");

#[program]
pub mod vault {
    use super::*;

    pub fn withdraw(ctx: Context<Withdraw>, amount: u64) -> Result<()> {
        let vault = &mut ctx.accounts.vault;
        vault.balance = vault.balance.checked_sub(amount).ok_or(ErrorCode::MathOverflow)?;
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Withdraw<'info> {
    #[account(mut, has_one = authority)]
    pub vault: Account<'info, Vault>,
    /// CHECK: only compared against vault.authority
    pub authority: AccountInfo<'info>,
}

#[account]
pub struct Vault {
    pub authority: Pubkey,
    pub balance: u64,
}

#[error_code]
pub enum ErrorCode {
    MathOverflow,
}
"""

# Raw + and * on a token amount.
STAKING_RAW_MATH = """use anchor_lang::prelude::*;

#[program]
pub mod staking {
    use super::*;

    pub fn deposit(ctx: Context<Deposit>, amount: u64) -> Result<()> {
        let pool = &mut ctx.accounts.pool;
        pool.total_staked = pool.total_staked + amount * pool.multiplier;
        emit!(Deposited { amount });
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Deposit<'info> {
    #[account(mut, has_one = authority)]
    pub pool: Account<'info, Pool>,
    pub authority: Signer<'info>,
}

#[account]
pub struct Pool {
    pub authority: Pubkey,
    pub total_staked: u64,
    pub multiplier: u64,
}

#[event]
pub struct Deposited {
    pub amount: u64,
}
"""

# Unbounded String seed, bump re-derived on every call.
PROFILE_PDA = """use anchor_lang::prelude::*;

#[program]
pub mod registry {
    use super::*;

    pub fn update_profile(ctx: Context<UpdateProfile>, name: String, bio_len: u64) -> Result<()> {
        let profile = &mut ctx.accounts.profile;
        profile.bio_len = bio_len;
        Ok(())
    }
}

#[derive(Accounts)]
#[instruction(name: String)]
pub struct UpdateProfile<'info> {
    #[account(mut, seeds = [b"profile", owner.key().as_ref(), name.as_bytes()], bump)]
    pub profile: Account<'info, Profile>,
    pub owner: Signer<'info>,
}

#[account]
pub struct Profile {
    pub owner: Pubkey,
    pub bio_len: u64,
    pub bump: u8,
}
"""

# Token CPI issued before the escrow state is updated.
ESCROW_CPI = """use anchor_lang::prelude::*;
use anchor_spl::token::{self, Token, TokenAccount, Transfer};

#[program]
pub mod escrow {
    use super::*;

    pub fn withdraw(ctx: Context<Withdraw>, amount: u64) -> Result<()> {
        let cpi_accounts = Transfer {
            from: ctx.accounts.vault_token.to_account_info(),
            to: ctx.accounts.user_token.to_account_info(),
            authority: ctx.accounts.user.to_account_info(),
        };
        token::transfer(CpiContext::new(ctx.accounts.token_program.to_account_info(), cpi_accounts), amount)?;
        ctx.accounts.state.withdrawn = true;
        emit!(Withdrawn { amount });
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Withdraw<'info> {
    #[account(mut, has_one = user)]
    pub state: Account<'info, EscrowState>,
    #[account(mut)]
    pub vault_token: Account<'info, TokenAccount>,
    #[account(mut)]
    pub user_token: Account<'info, TokenAccount>,
    pub user: Signer<'info>,
    pub token_program: Program<'info, Token>,
}

#[account]
pub struct EscrowState {
    pub user: Pubkey,
    pub withdrawn: bool,
}

#[event]
pub struct Withdrawn {
    pub amount: u64,
}
"""

# Running total updated with raw + after the token CPI.
ESCROW_MATH_AFTER_CPI = ESCROW_CPI.replace(
    "ctx.accounts.state.withdrawn = true;",
    "ctx.accounts.state.total_withdrawn = ctx.accounts.state.total_withdrawn + amount;",
).replace("pub withdrawn: bool,", "pub total_withdrawn: u64,")

# Fee computed inline in the transfer call.
FEE_TRANSFER = """use anchor_lang::prelude::*;
use anchor_spl::token::{self, Token, TokenAccount, Transfer};

#[program]
pub mod fees {
    use super::*;

    pub fn pay_fee(ctx: Context<PayFee>, amount: u64) -> Result<()> {
        let cpi_accounts = Transfer {
            from: ctx.accounts.payer_token.to_account_info(),
            to: ctx.accounts.treasury.to_account_info(),
            authority: ctx.accounts.payer.to_account_info(),
        };
        token::transfer(CpiContext::new(ctx.accounts.token_program.to_account_info(), cpi_accounts), amount * 3 + 1)?;
        emit!(FeePaid { amount });
        Ok(())
    }
}

#[derive(Accounts)]
pub struct PayFee<'info> {
    #[account(mut)]
    pub payer_token: Account<'info, TokenAccount>,
    #[account(mut)]
    pub treasury: Account<'info, TokenAccount>,
    pub payer: Signer<'info>,
    pub token_program: Program<'info, Token>,
}

#[event]
pub struct FeePaid {
    pub amount: u64,
}
"""

# invoke() through an unchecked token program account.
RAW_TOKEN_CPI = """use anchor_lang::prelude::*;
use anchor_lang::solana_program::program::invoke;

#[program]
pub mod payments {
    use super::*;

    pub fn pay(ctx: Context<Pay>, amount: u64) -> Result<()> {
        let ix = spl_token::instruction::transfer(
            ctx.accounts.token_program.key,
            ctx.accounts.from.key,
            ctx.accounts.to.key,
            ctx.accounts.owner.key,
            &[],
            amount,
        )?;
        invoke(&ix, &[ctx.accounts.from.clone(), ctx.accounts.to.clone(), ctx.accounts.owner.to_account_info()])?;
        emit!(Paid { amount });
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Pay<'info> {
    /// CHECK: token account, validated by the token program
    #[account(mut)]
    pub from: AccountInfo<'info>,
    /// CHECK: token account, validated by the token program
    #[account(mut)]
    pub to: AccountInfo<'info>,
    pub owner: Signer<'info>,
    /// CHECK: expected to be the token program
    pub token_program: AccountInfo<'info>,
}

#[event]
pub struct Paid {
    pub amount: u64,
}
"""

# Manual deserialisation of a raw account, plus a closable account elsewhere.
RAW_CONFIG = """use anchor_lang::prelude::*;

#[program]
pub mod settings {
    use super::*;

    pub fn read_config(ctx: Context<ReadConfig>) -> Result<()> {
        let config = Config::try_deserialize(&mut &ctx.accounts.config.data.borrow()[..])?;
        msg!("fee {}", config.fee);
        Ok(())
    }

    pub fn close_config(ctx: Context<CloseConfig>) -> Result<()> {
        Ok(())
    }
}

#[derive(Accounts)]
pub struct ReadConfig<'info> {
    /// CHECK: deserialized manually
    pub config: AccountInfo<'info>,
}

#[derive(Accounts)]
pub struct CloseConfig<'info> {
    #[account(mut, close = receiver)]
    pub config: Account<'info, Config>,
    #[account(mut)]
    pub receiver: Signer<'info>,
}

#[account]
pub struct Config {
    pub fee: u64,
}
"""

# init_if_needed on a counter.
COUNTER_INIT = """use anchor_lang::prelude::*;

#[program]
pub mod counter {
    use super::*;

    pub fn initialize(ctx: Context<Initialize>) -> Result<()> {
        let counter = &mut ctx.accounts.counter;
        counter.authority = ctx.accounts.authority.key();
        counter.count = 0;
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Initialize<'info> {
    #[account(init_if_needed, payer = authority, space = 8 + 32 + 8)]
    pub counter: Account<'info, Counter>,
    #[account(mut)]
    pub authority: Signer<'info>,
    pub system_program: Program<'info, System>,
}

#[account]
pub struct Counter {
    pub authority: Pubkey,
    pub count: u64,
}
"""


@pytest.fixture
def vault_unsigned():
    return VAULT_UNSIGNED


@pytest.fixture
def staking_raw_math():
    return STAKING_RAW_MATH


@pytest.fixture
def profile_pda():
    return PROFILE_PDA


@pytest.fixture
def escrow_cpi():
    return ESCROW_CPI


@pytest.fixture
def raw_token_cpi():
    return RAW_TOKEN_CPI


@pytest.fixture
def raw_config():
    return RAW_CONFIG


@pytest.fixture
def counter_init():
    return COUNTER_INIT


@pytest.fixture
def escrow_math_after_cpi():
    return ESCROW_MATH_AFTER_CPI


@pytest.fixture
def fee_transfer():
    return FEE_TRANSFER
