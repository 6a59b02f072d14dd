"""
Program Model Builder

Assembles the immutable ProgramModel from the structural items produced by
AnchorAST: account declarations with their constraint sets and storage
layouts, instructions with body operations in textual order, CPI edges, PDA
derivations and arithmetic sites.

Pure transformation. Malformed source raises ParseError and nothing else is
produced for that input.
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional, Set, Tuple

from anchorlens.models import (
    AccountConstraints,
    AccountDecl,
    AccountKind,
    ArithOp,
    BodyOp,
    BumpSource,
    CpiAccount,
    CpiCall,
    InstructionDecl,
    OpKind,
    PdaSeed,
    PdaSpec,
    ProgramModel,
    SeedKind,
    Span,
    StateStruct,
    StorageField,
)
from anchorlens.utils.anchor_ast import (
    AnchorAST,
    RawField,
    RawHandler,
    RawStatement,
    RawStruct,
    find_assignment,
    find_binary_operators,
    match_delim,
    split_top_level,
)

logger = logging.getLogger("anchorlens.model_builder")

PRIMITIVE_SIZES = {
    "bool": 1, "u8": 1, "i8": 1,
    "u16": 2, "i16": 2,
    "u32": 4, "i32": 4, "f32": 4,
    "u64": 8, "i64": 8, "f64": 8,
    "u128": 16, "i128": 16,
    "Pubkey": 32,
}

# Helper functions whose instruction builders hardcode the target program id
KNOWN_PROGRAM_HELPERS = {
    "system_instruction": "system_program",
    "spl_token::instruction": "token_program",
    "token_instruction": "token_program",
}

TRANSFER_FUNCTIONS = {"transfer", "transfer_checked", "mint_to", "burn", "withdraw", "sync_native"}

TOKEN_AMOUNT_RE = re.compile(r"amount|balance|lamports|supply|total|price|fee|reward|stake|deposit|shares", re.I)

_VALIDATION_RE = re.compile(r"^(?:require(?:_\w+)?|assert(?:_\w+)?)!\s*\(")
_EVENT_RE = re.compile(r"^(?:emit|emit_cpi)!\s*\(")
_LOG_RE = re.compile(r"^(?:msg!|sol_log\w*\s*)\s*\(")
_CPI_CTX_RE = re.compile(r"CpiContext::new(?:_with_signer)?\s*\(")
_CPI_CTX_LET_RE = re.compile(r"^let\s+(?:mut\s+)?(\w+)\s*=\s*CpiContext::new(?:_with_signer)?\s*\(")
_CPI_CALL_RE = re.compile(r"\b((?:[a-z_]\w*::)+)([a-z_]\w*)\s*\(")
_INVOKE_RE = re.compile(r"\b(invoke_signed|invoke)\s*\(")
_DESERIALIZE_RE = re.compile(r"\b([A-Z]\w*)::(?:try_from_slice|try_deserialize(?:_unchecked)?|deserialize)\s*\(")
_MUTATING_CALL_RE = re.compile(
    r"\.(?:set_inner|serialize|exit|sub_lamports|add_lamports|try_borrow_mut_lamports|try_borrow_mut_data|close|realloc)\s*\("
)
_ALIAS_RE = re.compile(
    r"^let\s+(?:mut\s+)?(\w+)\s*(?::[^=]+)?=\s*&?\s*(?:mut\s+)?ctx\.accounts\.(\w+)\s*"
    r"(?:;|$|\.(?:load_mut|load_init|to_account_info|as_mut)\b)"
)
_CHECKED_RE = re.compile(r"\.(checked|saturating|wrapping)_(add|sub|mul|div|rem|pow)\s*\(")
_FIND_PDA_RE = re.compile(r"Pubkey::(find_program_address|create_program_address)\s*\(")
_LEN_GUARD_TEMPLATE = r"\b{name}\s*\.\s*len\s*\(\s*\)\s*(?:<=|<)\s*[\w:]+"
_CONSTANT_EXPR_RE = re.compile(r"[\d_\s+\-*/%()]*")


def _folded_constant(masked: str, offset: int) -> bool:
    """Operator at offset sits in an expression made only of numeric literals."""
    start = offset
    depth = 0
    while start > 0:
        c = masked[start - 1]
        if c in ")]}":
            depth += 1
        elif c in "([{":
            if depth == 0:
                break
            depth -= 1
        elif c in ",;=" and depth == 0:
            break
        start -= 1
    end = offset + 1
    depth = 0
    while end < len(masked):
        c = masked[end]
        if c in "([{":
            depth += 1
        elif c in ")]}":
            if depth == 0:
                break
            depth -= 1
        elif c in ",;" and depth == 0:
            break
        end += 1
    return bool(_CONSTANT_EXPR_RE.fullmatch(masked[start:end]))


def _strip_generic(type_text: str) -> str:
    t = re.sub(r"\s+", "", type_text)
    while t.startswith("Box<") and t.endswith(">"):
        t = t[4:-1]
    return t


def _generic_args(type_text: str) -> List[str]:
    t = _strip_generic(type_text)
    if "<" not in t:
        return []
    inner = t[t.index("<") + 1:t.rindex(">")]
    args, depth, seg = [], 0, ""
    for c in inner:
        if c == "<":
            depth += 1
        elif c == ">":
            depth -= 1
        if c == "," and depth == 0:
            args.append(seg)
            seg = ""
        else:
            seg += c
    args.append(seg)
    return [a for a in args if a and not a.startswith("'")]


def classify_account_type(type_text: str) -> Tuple[AccountKind, Optional[str]]:
    t = _strip_generic(type_text)
    args = _generic_args(type_text)
    inner = args[-1] if args else None
    if t.startswith("Signer<") or t == "Signer":
        return AccountKind.SIGNER, None
    if t.startswith(("Program<", "Interface<")):
        return AccountKind.PROGRAM, inner
    if t.startswith(("AccountInfo<", "UncheckedAccount<")) or t in ("AccountInfo", "UncheckedAccount"):
        return AccountKind.RAW, None
    return AccountKind.TYPED, inner


def storage_size(type_text: str, max_len: Optional[int]) -> Tuple[Optional[int], bool]:
    """Semantic size of a storage field type. Returns (size, dynamic)."""
    t = re.sub(r"\s+", "", type_text)
    if t in PRIMITIVE_SIZES:
        return PRIMITIVE_SIZES[t], False
    arr = re.fullmatch(r"\[(.+);(\d+)\]", t)
    if arr:
        inner, _ = storage_size(arr.group(1), None)
        return (inner * int(arr.group(2)) if inner is not None else None), False
    opt = re.fullmatch(r"Option<(.+)>", t)
    if opt:
        inner, dynamic = storage_size(opt.group(1), max_len)
        return (1 + inner if inner is not None else None), dynamic
    if t == "String":
        return (4 + max_len if max_len is not None else None), max_len is None
    vec = re.fullmatch(r"Vec<(.+)>", t)
    if vec:
        inner, _ = storage_size(vec.group(1), None)
        if max_len is None:
            return None, True
        return (4 + max_len * inner if inner is not None else None), False
    return None, False


def evaluate_space(expr: str) -> Optional[int]:
    """Evaluate a literal `space = 8 + 32 * 2` expression. None if it is not purely numeric."""
    cleaned = expr.replace("_", "").strip()
    if not re.fullmatch(r"[\d\s+*]+", cleaned):
        return None
    total = 0
    for term in cleaned.split("+"):
        product = 1
        for factor in term.split("*"):
            factor = factor.strip()
            if not factor:
                return None
            product *= int(factor)
        total += product
    return total


class ModelBuilder:
    """Builds a ProgramModel from source text."""

    def build(self, source: str) -> ProgramModel:
        ast = AnchorAST(source)
        self.ast = ast

        state_structs = {name: self._build_state_struct(s) for name, s in ast.state_structs.items()}
        instruction_args: Dict[str, Dict[str, str]] = {}
        accounts: Dict[str, AccountDecl] = {}

        for struct_name, struct in ast.accounts_structs.items():
            instruction_args[struct_name] = self._instruction_args(struct)
            for raw in struct.fields:
                decl = self._build_account(struct_name, raw, state_structs)
                accounts[decl.qualified_name] = decl

        instructions: List[InstructionDecl] = []
        cpi_edges: List[CpiCall] = []
        pdas: List[PdaSpec] = []
        arith: List[ArithOp] = []

        for handler in ast.handlers:
            instr, calls, body_pdas, sites = self._build_instruction(handler, accounts, instruction_args)
            instructions.append(instr)
            cpi_edges.extend(calls)
            pdas.extend(body_pdas)
            arith.extend(sites)

        pdas = self._account_pdas(accounts, instructions, instruction_args) + pdas
        pdas.sort(key=lambda p: p.span.start)

        model = ProgramModel(
            name=ast.program_name,
            source=source,
            source_hash=hashlib.sha256(source.encode("utf-8")).hexdigest(),
            accounts=accounts,
            instructions=instructions,
            cpi_edges=cpi_edges,
            pda_derivations=pdas,
            arithmetic_sites=arith,
            state_structs=state_structs,
            events=sorted(ast.event_structs),
            instruction_args=instruction_args,
        )
        logger.info(
            f"Built model '{model.name}': {len(accounts)} accounts, {len(instructions)} instructions, "
            f"{len(cpi_edges)} CPI edges, {len(pdas)} PDA derivations, {len(arith)} arithmetic sites"
        )
        return model

    # ── structs ──────────────────────────────────────────────────────────────

    def _build_state_struct(self, struct: RawStruct) -> StateStruct:
        fields = []
        for raw in struct.fields:
            max_len = None
            for attr in raw.attributes:
                if attr.name == "max_len" and attr.args_span:
                    nums = re.findall(r"\d+", self.ast.text(attr.args_span))
                    if nums:
                        max_len = int(nums[0])
            size, dynamic = storage_size(raw.type_text, max_len)
            fields.append(StorageField(
                name=raw.name,
                type=raw.type_text,
                size=size,
                max_len=max_len,
                dynamic=dynamic,
                span=raw.span,
            ))
        return StateStruct(name=struct.name, fields=fields, span=struct.span)

    def _instruction_args(self, struct: RawStruct) -> Dict[str, str]:
        args: Dict[str, str] = {}
        for attr in struct.attributes:
            if attr.name == "instruction" and attr.args_span:
                args.update(dict(self.ast.parse_params(attr.args_span)))
        return args

    def _build_account(self, context: str, raw: RawField, state_structs: Dict[str, StateStruct]) -> AccountDecl:
        kind, inner = classify_account_type(raw.type_text)
        c: Dict[str, object] = {"has_one": [], "custom": []}
        spans: Dict[str, Optional[Span]] = {}
        attr_span = None
        attr_close = None

        for attr in raw.attributes:
            if attr.name != "account":
                continue
            attr_span = attr.span
            attr_close = attr.args_span.end if attr.args_span else None
            items = self.ast.attribute_items(attr)
            for idx, item in enumerate(items):
                key = item.key
                value = item.value.split(" @ ")[0].strip() if item.value else ""
                if key == "mut":
                    c["mutable"] = True
                    spans["mut"] = self._removal_span(attr, items, idx)
                elif key in ("init", "zero"):
                    c["init"] = True
                    c["mutable"] = True
                elif key == "init_if_needed":
                    c["init_if_needed"] = True
                    c["mutable"] = True
                    spans["init_if_needed"] = item.span
                elif key == "signer":
                    c["signer"] = True
                elif key == "seeds":
                    inner_start = item.value_span.start + 1 if item.value_span else item.span.start
                    seeds_close = match_delim(self.ast.masked, item.value_span.start) if item.value_span else item.span.end
                    c["seeds"] = [
                        self.ast.source[a:b]
                        for a, b in split_top_level(self.ast.masked, inner_start, seeds_close)
                    ]
                    spans["seeds"] = item.span
                elif key == "bump":
                    c["bump"] = value
                    if not value:
                        c["bump_source"] = BumpSource.REDERIVED
                    elif re.fullmatch(r"\d+", value):
                        c["bump_source"] = BumpSource.HARDCODED
                    else:
                        c["bump_source"] = BumpSource.STORED
                    spans["bump"] = item.span
                elif key == "has_one":
                    c["has_one"].append(value)
                elif key == "close":
                    c["close"] = value
                elif key == "payer":
                    c["payer"] = value
                elif key == "space":
                    c["space"] = item.value
                    spans["space"] = item.value_span
                elif key == "owner":
                    c["owner"] = value
                elif key == "address":
                    c["address"] = value
                elif key == "constraint":
                    c["custom"].append(value)

        storage_layout = {}
        if inner and inner in state_structs:
            storage_layout = state_structs[inner].layout

        return AccountDecl(
            name=raw.name,
            context=context,
            kind=kind,
            type_text=raw.type_text,
            inner_type=inner,
            constraints=AccountConstraints(**c),
            has_check_doc=bool(re.search(r"///\s*CHECK", raw.leading_text)),
            storage_layout=storage_layout,
            line=self.ast.line_of(raw.span.start),
            span=raw.span,
            type_span=raw.type_span,
            attr_span=attr_span,
            attr_close=attr_close,
            mut_span=spans.get("mut"),
            bump_span=spans.get("bump"),
            space_span=spans.get("space"),
            init_if_needed_span=spans.get("init_if_needed"),
        )

    def _removal_span(self, attr, items, idx: int) -> Span:
        """Span that removes items[idx] together with one separating comma."""
        if len(items) == 1:
            end = attr.span.end
            while end < len(self.ast.source) and self.ast.source[end] in " \t\r\n":
                end += 1
            return Span(start=attr.span.start, end=end)
        if idx < len(items) - 1:
            return Span(start=items[idx].span.start, end=items[idx + 1].span.start)
        return Span(start=items[idx - 1].span.end, end=items[idx].span.end)

    # ── instructions ─────────────────────────────────────────────────────────

    def _build_instruction(self, handler: RawHandler, accounts: Dict[str, AccountDecl], instruction_args: Dict[str, Dict[str, str]]):
        ast = self.ast
        context = handler.context
        ctx_accounts = {a.name: a for a in accounts.values() if a.context == context}
        aliases: Dict[str, str] = {}
        cpi_contexts: Dict[str, Tuple[int, int]] = {}
        ix_defs: Dict[str, str] = {}
        params = dict(handler.params)
        args = dict(instruction_args.get(context, {}))
        args.update(params)

        ops: List[BodyOp] = []
        pending_calls: List[dict] = []
        pdas: List[PdaSpec] = []
        sites: List[ArithOp] = []
        return_span = None

        for stmt in handler.statements:
            text = ast.text(stmt.span)
            masked = ast.masked[stmt.span.start:stmt.span.end]

            alias = _ALIAS_RE.match(masked)
            if alias and alias.group(2) in ctx_accounts:
                aliases[alias.group(1)] = alias.group(2)
            let_ix = re.match(r"let\s+(?:mut\s+)?(\w+)\s*=", masked)
            if let_ix:
                ix_defs[let_ix.group(1)] = text

            if stmt.block is not None:
                if stmt.is_guard:
                    ops.append(self._op(OpKind.VALIDATION, stmt, text, self._refs(masked, ctx_accounts, aliases)))
                continue

            if re.fullmatch(r"Ok\s*\(\s*\(\s*\)\s*\)", masked.strip()):
                return_span = stmt.span
                continue

            kind = None
            refs = self._refs(masked, ctx_accounts, aliases)
            if _EVENT_RE.match(masked):
                kind = OpKind.EVENT_EMISSION
            elif _LOG_RE.match(masked):
                kind = OpKind.LOG
            elif _VALIDATION_RE.match(masked):
                kind = OpKind.VALIDATION
            else:
                ctx_let = _CPI_CTX_LET_RE.match(masked)
                if ctx_let:
                    open_idx = stmt.span.start + ctx_let.end() - 1
                    cpi_contexts[ctx_let.group(1)] = (open_idx, match_delim(ast.masked, open_idx))
                else:
                    call = self._detect_cpi(stmt, masked, cpi_contexts, ix_defs, ctx_accounts, aliases, handler.name)
                    if call is not None:
                        kind = OpKind.CPI_CALL
                        call["position"] = len(ops)
                        pending_calls.append(call)
                if kind is None and _DESERIALIZE_RE.search(masked):
                    kind = OpKind.DESERIALIZE
                if kind is None and self._is_mutation(masked, ctx_accounts, aliases):
                    kind = OpKind.STATE_MUTATION

            if kind is not None:
                ops.append(self._op(kind, stmt, text, refs))

            pda = _FIND_PDA_RE.search(masked)
            if pda:
                pdas.append(self._body_pda(handler, stmt, masked, pda, args, ctx_accounts))

            if kind not in (OpKind.EVENT_EMISSION, OpKind.LOG, OpKind.VALIDATION):
                sites.extend(self._arith_sites(handler.name, stmt, masked, text))

        calls = []
        for call in pending_calls:
            pos = call["position"]
            before = sum(1 for op in ops[:pos] if op.kind == OpKind.STATE_MUTATION)
            after = sum(1 for op in ops[pos + 1:] if op.kind == OpKind.STATE_MUTATION)
            calls.append(CpiCall(mutations_before=before, mutations_after=after, **call))

        instr = InstructionDecl(
            name=handler.name,
            context=context,
            params=params,
            accounts=[f"{context}.{n}" for n in ctx_accounts],
            operations=ops,
            line=ast.line_of(handler.span.start),
            span=handler.span,
            body_span=handler.body_span,
            return_span=return_span,
        )
        return instr, calls, pdas, sites

    def _op(self, kind: OpKind, stmt: RawStatement, text: str, targets: List[str]) -> BodyOp:
        return BodyOp(
            kind=kind,
            text=text,
            line=self.ast.line_of(stmt.span.start),
            span=stmt.span,
            statement_span=stmt.span,
            targets=targets,
            in_loop=stmt.in_loop,
        )

    def _refs(self, masked: str, ctx_accounts: Dict[str, AccountDecl], aliases: Dict[str, str]) -> List[str]:
        found: List[str] = []
        for m in re.finditer(r"ctx\.accounts\.(\w+)", masked):
            if m.group(1) in ctx_accounts and m.group(1) not in found:
                found.append(m.group(1))
        for alias, target in aliases.items():
            if re.search(rf"(?<![\w.]){re.escape(alias)}\b", masked) and target not in found:
                found.append(target)
        return found

    def _is_mutation(self, masked: str, ctx_accounts: Dict[str, AccountDecl], aliases: Dict[str, str]) -> bool:
        stripped = masked.strip()
        if _MUTATING_CALL_RE.search(stripped) and self._refs(stripped, ctx_accounts, aliases):
            return True
        if stripped.startswith("let "):
            return False
        assign = find_assignment(stripped)
        if assign is None:
            return False
        lhs = stripped[:assign[0]].rstrip("+-*/% ").lstrip("*& ")
        root = re.match(r"(?:ctx\.accounts\.)?(\w+)", lhs)
        if not root:
            return False
        name = root.group(1)
        if lhs.startswith("ctx.accounts."):
            return name in ctx_accounts
        return name in aliases and "." in lhs

    # ── CPI ──────────────────────────────────────────────────────────────────

    def _detect_cpi(self, stmt, masked, cpi_contexts, ix_defs, ctx_accounts, aliases, instruction) -> Optional[dict]:
        ast = self.ast
        base = stmt.span.start

        invoke = _INVOKE_RE.search(masked)
        if invoke:
            open_idx = base + invoke.end() - 1
            close = match_delim(ast.masked, open_idx)
            call_args = split_top_level(ast.masked, open_idx + 1, close)
            program_account = None
            typed = False
            target = "unknown"
            refs = self._refs(masked, ctx_accounts, aliases)
            ix_text = ""
            if call_args:
                ix_var = re.sub(r"[&\s]", "", ast.source[call_args[0][0]:call_args[0][1]])
                ix_text = ix_defs.get(ix_var, ast.source[call_args[0][0]:call_args[0][1]])
                refs += [r for r in self._refs(ix_text, ctx_accounts, aliases) if r not in refs]
            for name in refs:
                acct = ctx_accounts[name]
                if acct.kind == AccountKind.PROGRAM or name.endswith("program"):
                    program_account = name
                    typed = acct.kind == AccountKind.PROGRAM
                    target = name
                    break
            if program_account is None:
                for helper, program in KNOWN_PROGRAM_HELPERS.items():
                    if helper + "::" in ix_text:
                        typed = True
                        target = program
                        break
            function = invoke.group(1)
            seeds = []
            if function == "invoke_signed" and len(call_args) >= 3:
                seeds = [ast.source[call_args[2][0]:call_args[2][1]]]
            forwarded = [r for r in refs if r != program_account]
            is_transfer = bool(re.search(r"::(?:" + "|".join(TRANSFER_FUNCTIONS) + r")\s*\(", ix_text))
            return self._cpi_dict(instruction, stmt, target, typed, program_account, function,
                                  forwarded, seeds, ctx_accounts, is_transfer)

        for call in _CPI_CALL_RE.finditer(masked):
            module = call.group(1).rstrip(":")
            if module in ("Pubkey", "CpiContext", "msg", "Clock", "Rent") or module[:1].isupper():
                continue
            open_idx = base + call.end() - 1
            close = match_delim(ast.masked, open_idx)
            call_args = split_top_level(ast.masked, open_idx + 1, close)
            if not call_args:
                continue
            first = ast.masked[call_args[0][0]:call_args[0][1]].strip()
            ctx_span = None
            nested = _CPI_CTX_RE.match(first)
            if nested:
                paren = call_args[0][0] + nested.end() - 1
                ctx_span = (paren, match_delim(ast.masked, paren))
            else:
                var = re.match(r"(\w+)", first)
                if var and var.group(1) in cpi_contexts:
                    ctx_span = cpi_contexts[var.group(1)]
            if ctx_span is None:
                continue

            ctx_args = split_top_level(ast.masked, ctx_span[0] + 1, ctx_span[1])
            program_text = ast.masked[ctx_args[0][0]:ctx_args[0][1]] if ctx_args else ""
            program_refs = self._refs(program_text, ctx_accounts, aliases)
            program_account = program_refs[0] if program_refs else None
            typed = bool(program_account) and ctx_accounts[program_account].kind == AccountKind.PROGRAM
            target = program_account or program_text.strip() or "unknown"
            forwarded = []
            if len(ctx_args) >= 2:
                accounts_text = ast.masked[ctx_args[1][0]:ctx_args[1][1]]
                var = re.fullmatch(r"\s*(\w+)\s*", accounts_text)
                if var and var.group(1) in ix_defs:
                    accounts_text = ix_defs[var.group(1)]
                forwarded = self._refs(accounts_text, ctx_accounts, aliases)
            seeds = [ast.source[a:b] for a, b in ctx_args[2:3]]
            function = call.group(2)
            return self._cpi_dict(instruction, stmt, target, typed, program_account, f"{module}::{function}",
                                  forwarded, seeds, ctx_accounts, function in TRANSFER_FUNCTIONS)
        return None

    def _cpi_dict(self, instruction, stmt, target, typed, program_account, function, forwarded, seeds, ctx_accounts, is_transfer) -> dict:
        context = next(iter(ctx_accounts.values())).context if ctx_accounts else ""
        cpi_accounts = []
        for name in forwarded:
            acct = ctx_accounts[name]
            cpi_accounts.append(CpiAccount(
                name=name,
                mutable=acct.constraints.mutable,
                signer=acct.kind == AccountKind.SIGNER or (bool(seeds) and acct.constraints.seeds is not None),
            ))
        return {
            "instruction": instruction,
            "target_program": target,
            "target_typed": typed,
            "target_account": f"{context}.{program_account}" if program_account else None,
            "function": function,
            "accounts": cpi_accounts,
            "signer_seeds": seeds,
            "is_transfer": is_transfer,
            "line": self.ast.line_of(stmt.span.start),
            "span": stmt.span,
        }

    # ── PDAs ─────────────────────────────────────────────────────────────────

    def classify_seed(self, text: str, args: Dict[str, str], ctx_accounts: Dict[str, AccountDecl], guarded: Set[str]) -> PdaSeed:
        t = text.strip().lstrip("&").strip()
        if t.startswith(('b"', '"', "b'")) or re.match(r"[A-Z][A-Z0-9_]*\b", t):
            return PdaSeed(text=text, kind=SeedKind.LITERAL)
        if t.startswith("["):
            return PdaSeed(text=text, kind=SeedKind.NUMERIC)
        root_m = re.match(r"(?:ctx\.accounts\.)?(\w+)", t)
        root = root_m.group(1) if root_m else None
        if re.search(r"\.key\s*\(\s*\)|\.key\.as_ref", t):
            return PdaSeed(text=text, kind=SeedKind.ACCOUNT_KEY, source_name=root)
        if re.search(r"to_(?:le|be)_bytes", t):
            return PdaSeed(text=text, kind=SeedKind.NUMERIC, source_name=root)
        if root in args:
            arg_type = re.sub(r"\s+", "", args[root])
            if re.fullmatch(r"[ui]\d+|[ui]size|bool", arg_type):
                return PdaSeed(text=text, kind=SeedKind.NUMERIC, source_name=root)
            bounded = arg_type.startswith("[") or arg_type == "Pubkey" or root in guarded
            return PdaSeed(text=text, kind=SeedKind.USER_INPUT, source_name=root, bounded=bounded)
        if root in ctx_accounts:
            return PdaSeed(text=text, kind=SeedKind.USER_INPUT, source_name=root, bounded=True)
        return PdaSeed(text=text, kind=SeedKind.LITERAL)

    def _guarded_args(self, args: Dict[str, str], constraints: List[str], validation_texts: List[str]) -> Set[str]:
        guarded = set()
        for name in args:
            pattern = re.compile(_LEN_GUARD_TEMPLATE.format(name=re.escape(name)))
            if any(pattern.search(t) for t in constraints + validation_texts):
                guarded.add(name)
        return guarded

    def _account_pdas(self, accounts, instructions, instruction_args) -> List[PdaSpec]:
        pdas = []
        for acct in accounts.values():
            if acct.constraints.seeds is None:
                continue
            users = [i for i in instructions if i.context == acct.context]
            args = dict(instruction_args.get(acct.context, {}))
            for instr in users:
                for k, v in instr.params.items():
                    args.setdefault(k, v)
            validations = [op.text for i in users for op in i.ops(OpKind.VALIDATION)]
            ctx_custom = [c for a in accounts.values() if a.context == acct.context for c in a.constraints.custom]
            guarded = self._guarded_args(args, ctx_custom, validations)
            ctx_accounts = {a.name: a for a in accounts.values() if a.context == acct.context}
            seeds = [self.classify_seed(s, args, ctx_accounts, guarded) for s in acct.constraints.seeds]
            pdas.append(PdaSpec(
                account=acct.qualified_name,
                instruction=users[0].name if users else None,
                seeds=seeds,
                bump_source=acct.constraints.bump_source or BumpSource.REDERIVED,
                is_init=acct.constraints.init or acct.constraints.init_if_needed,
                line=acct.line,
                span=acct.attr_span or acct.span,
                guard_insert_at=acct.attr_close if acct.attr_close is not None else acct.span.start,
                guard_in_attribute=acct.attr_close is not None,
            ))
        return pdas

    def _body_pda(self, handler: RawHandler, stmt: RawStatement, masked: str, m, args, ctx_accounts) -> PdaSpec:
        ast = self.ast
        open_idx = stmt.span.start + m.end() - 1
        close = match_delim(ast.masked, open_idx)
        call_args = split_top_level(ast.masked, open_idx + 1, close)
        seeds_texts: List[str] = []
        hardcoded = False
        if call_args:
            a, b = call_args[0]
            bracket = ast.masked.find("[", a, b)
            if bracket != -1:
                inner_close = match_delim(ast.masked, bracket)
                for sa, sb in split_top_level(ast.masked, bracket + 1, inner_close):
                    seed = ast.source[sa:sb]
                    if re.fullmatch(r"&\s*\[\s*\d+\s*\]", seed.strip()):
                        hardcoded = True
                        continue
                    seeds_texts.append(seed)
        validations = []
        for prior in handler.statements:
            if prior.span.start >= stmt.span.start:
                break
            prior_text = ast.text(prior.span)
            if _VALIDATION_RE.match(prior_text.strip()) or prior.is_guard:
                validations.append(prior_text)
        guarded = self._guarded_args(args, [], validations)
        seeds = [self.classify_seed(s, args, ctx_accounts, guarded) for s in seeds_texts]

        if m.group(1) == "find_program_address":
            bump_source = BumpSource.REDERIVED
        else:
            bump_source = BumpSource.HARDCODED if hardcoded else BumpSource.STORED
        binding = re.match(r"let\s+\(?\s*(?:mut\s+)?(\w+)", masked)
        owner = binding.group(1) if binding else "pda"
        return PdaSpec(
            account=f"{handler.name}:{owner}",
            instruction=handler.name,
            seeds=seeds,
            bump_source=bump_source,
            is_init=False,
            line=ast.line_of(stmt.span.start),
            span=stmt.span,
            guard_insert_at=stmt.span.start,
            guard_in_attribute=False,
        )

    # ── arithmetic ───────────────────────────────────────────────────────────

    def _arith_sites(self, instruction: str, stmt: RawStatement, masked: str, text: str) -> List[ArithOp]:
        """Arithmetic anywhere in a statement: assignments, call arguments, return values."""
        sites = []
        base = stmt.span.start
        line = self.ast.line_of(base)
        amount = bool(TOKEN_AMOUNT_RE.search(text))
        scan_from = 0
        assign = find_assignment(masked)
        if assign is not None:
            eq, compound = assign
            if compound:
                sites.append(ArithOp(
                    instruction=instruction,
                    op=compound + "=",
                    checked=False,
                    touches_token_amount=amount,
                    line=line,
                    span=Span(start=base + eq - 1, end=base + eq + 1),
                    statement_span=stmt.span,
                    statement_text=text,
                ))
            scan_from = eq + 1
            rhs = masked[scan_from:].rstrip(" ;\n\t")
            if _CONSTANT_EXPR_RE.fullmatch(rhs):
                # constant expression, folded at compile time
                return sites
        for offset, op in find_binary_operators(masked[scan_from:]):
            if _folded_constant(masked, scan_from + offset):
                continue
            pos = base + scan_from + offset
            sites.append(ArithOp(
                instruction=instruction,
                op=op,
                checked=False,
                touches_token_amount=amount,
                line=self.ast.line_of(pos),
                span=Span(start=pos, end=pos + 1),
                statement_span=stmt.span,
                statement_text=text,
            ))
        for m in _CHECKED_RE.finditer(masked):
            pos = base + m.start()
            sites.append(ArithOp(
                instruction=instruction,
                op=f"{m.group(1)}_{m.group(2)}",
                checked=True,
                touches_token_amount=amount,
                line=self.ast.line_of(pos),
                span=Span(start=pos, end=base + m.end()),
                statement_span=stmt.span,
                statement_text=text,
            ))
        sites.sort(key=lambda s: s.span.start)
        return sites


def build_model(source: str) -> ProgramModel:
    """Build a ProgramModel for one compilation unit. Raises ParseError."""
    return ModelBuilder().build(source)
