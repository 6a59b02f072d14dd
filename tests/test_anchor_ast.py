"""
Tests for the Anchor source parser
"""

import pytest

from anchorlens.models import ErrorKind
from anchorlens.utils.anchor_ast import (
    AnchorAST,
    find_assignment,
    find_binary_operators,
    mask_source,
    split_top_level,
)
from anchorlens.utils.errors import ParseError


MINIMAL = """use anchor_lang::prelude::*;

#[program]
pub mod minimal {
    use super::*;

    pub fn ping(ctx: Context<Ping>, amount: u64) -> Result<()> {
        if amount == 0 {
            return err!(ErrorCode::Zero);
        }
        msg!("ping {}", amount); // trailing comment with { brace
        Ok(())
    }
}

#[derive(Accounts)]
pub struct Ping<'info> {
    pub caller: Signer<'info>,
}
"""


def test_parses_program_structure(vault_unsigned):
    """Program name, structs and handlers are recovered"""
    ast = AnchorAST(vault_unsigned)

    assert ast.program_name == "vault"
    assert list(ast.accounts_structs) == ["Withdraw"]
    assert list(ast.state_structs) == ["Vault"]
    assert [h.name for h in ast.handlers] == ["withdraw"]

    handler = ast.handlers[0]
    assert handler.context == "Withdraw"
    assert handler.params == [("amount", "u64")]
    assert len(handler.statements) == 3


def test_account_fields_keep_attributes_and_docs(vault_unsigned):
    ast = AnchorAST(vault_unsigned)
    fields = ast.accounts_structs["Withdraw"].fields

    assert [f.name for f in fields] == ["vault", "authority"]
    assert fields[0].attributes[0].name == "account"
    assert fields[0].type_text == "Account<'info, Vault>"
    assert "/// CHECK" in fields[1].leading_text
    # span starts at the attribute, type span is exact
    assert vault_unsigned[fields[0].span.start:].startswith("#[account(mut, has_one = authority)]")
    assert vault_unsigned[fields[1].type_span.start:fields[1].type_span.end] == "AccountInfo<'info>"


def test_guard_blocks_and_comments():
    """`if .. { return err!(..) }` is a guard; braces in comments are ignored"""
    ast = AnchorAST(MINIMAL)
    statements = ast.handlers[0].statements

    guard = statements[0]
    assert guard.block == "if"
    assert guard.is_guard
    texts = [MINIMAL[s.span.start:s.span.end] for s in statements]
    assert 'msg!("ping {}", amount);' in texts
    assert texts[-1] == "Ok(())"


def test_mask_source_preserves_offsets():
    source = 'let s = "a { b"; // } comment\nlet c = \'x\';'
    masked = mask_source(source)

    assert len(masked) == len(source)
    assert "{" not in masked and "}" not in masked
    assert masked.count("\n") == 1
    # lifetimes are not char literals
    assert mask_source("Account<'info, Vault>") == "Account<'info, Vault>"


def test_find_assignment_and_operators():
    assert find_assignment("a += b") == (3, "+")
    assert find_assignment("a = b") == (2, "")
    assert find_assignment("a == b") is None
    assert find_assignment("f(x = 1)") is None

    assert find_binary_operators("a - b * c") == [(2, "-"), (6, "*")]
    assert find_binary_operators("x = -1") == []
    assert find_binary_operators("fn f() -> u64") == []


def test_split_top_level_ignores_nested_commas():
    text = "a, f(b, c), [d, e]"
    parts = split_top_level(text, 0, len(text))

    assert [text[a:b] for a, b in parts] == ["a", "f(b, c)", "[d, e]"]


# ── ParseError ──────────────────────────────────────────────────────────────

def test_unterminated_string_is_parse_error():
    source = MINIMAL.replace('msg!("ping {}", amount);', 'msg!("ping {}, amount);')

    with pytest.raises(ParseError) as exc:
        AnchorAST(source)

    assert exc.value.kind == ErrorKind.PARSE_ERROR
    assert exc.value.line is not None


def test_unbalanced_braces_is_parse_error():
    source = MINIMAL.replace("Ok(())\n    }", "Ok(())\n    }}")

    with pytest.raises(ParseError) as exc:
        AnchorAST(source)

    assert exc.value.span is not None
    assert "start" in exc.value.to_detail().location


def test_missing_program_module_is_parse_error():
    source = MINIMAL.replace("#[program]\n", "")

    with pytest.raises(ParseError, match="#\\[program\\]"):
        AnchorAST(source)


def test_undefined_accounts_struct_is_parse_error():
    source = MINIMAL.replace("Context<Ping>", "Context<Pong>")

    with pytest.raises(ParseError, match="Pong"):
        AnchorAST(source)
