"""
Lightweight SQL inspection helpers.

Pattern-based extraction of tables, aliases, column references and clause
boundaries. Everything else in the package asks SQL questions through this
module only, so a real parser can replace the regexes without touching
callers. ``sqlparse`` is used for statement splitting; clause work is done on
a copy of the text whose string literals are blanked out (same length, so
offsets line up with the original).
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass, field

import sqlparse
from sqlparse.sql import Parenthesis
from sqlparse.tokens import DML, Comment, Keyword

SQL_KEYWORDS = frozenset(
    """
    SELECT FROM WHERE AND OR NOT IN IS NULL LIKE ILIKE BETWEEN EXISTS AS ON USING JOIN
    LEFT RIGHT FULL INNER OUTER CROSS NATURAL LATERAL GROUP BY ORDER HAVING LIMIT OFFSET
    UNION ALL DISTINCT INTERSECT EXCEPT CASE WHEN THEN ELSE END ASC DESC NULLS FIRST LAST
    TRUE FALSE WITH RECURSIVE INTERVAL CURRENT_DATE CURRENT_TIME CURRENT_TIMESTAMP
    LOCALTIME LOCALTIMESTAMP YEAR QUARTER MONTH WEEK DAY HOUR MINUTE SECOND EPOCH DOW DOY
    DATE TIME TIMESTAMP INTEGER INT BIGINT SMALLINT DECIMAL NUMERIC FLOAT DOUBLE REAL
    PRECISION CHAR VARCHAR TEXT BOOLEAN SIGNED UNSIGNED FETCH NEXT ROWS ROW ONLY OVER
    PARTITION WINDOW FILTER WITHIN RANGE PRECEDING FOLLOWING UNBOUNDED CURRENT SEPARATOR
    COLLATE ESCAPE SOME ANY TOP DIV MOD REGEXP RLIKE SIMILAR TO AT ZONE
    """.split()
)

_IDENT = r"(?:`[^`]+`|\"[^\"]+\"|\[[^\]]+\]|[^\W\d][\w$]*)"
_PATH_RE = re.compile(rf"(?<![\w$.]){_IDENT}(?:\s*\.\s*(?:{_IDENT}|\*))*")
_STRING_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'")
_LINE_COMMENT_RE = re.compile(r"--[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_JOIN_SPLIT_RE = re.compile(
    r"\b(?:STRAIGHT_JOIN|(?:NATURAL\s+)?(?:(?:LEFT|RIGHT|FULL)(?:\s+OUTER)?\s+|INNER\s+|CROSS\s+)?JOIN)\b",
    re.IGNORECASE,
)
_JOIN_CONDITION_RE = re.compile(r"\b(?:ON|USING)\b", re.IGNORECASE)
_INDEX_HINT_RE = re.compile(
    r"\b(?:USE|FORCE|IGNORE)\s+(?:INDEX|KEY)\b(?:\s+FOR\s+(?:JOIN|ORDER\s+BY|GROUP\s+BY))?\s*\([^)]*\)",
    re.IGNORECASE,
)
_FUNCTION_CALL_RE = re.compile(rf"^\s*({_IDENT})\s*\(", re.IGNORECASE)
_CLAUSE_RE = re.compile(
    r"\b(SELECT|FROM|WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|OFFSET|FETCH|WINDOW)\b",
    re.IGNORECASE,
)
_SET_OP_RE = re.compile(r"\b(?:UNION(?:\s+ALL)?|INTERSECT|EXCEPT)\b", re.IGNORECASE)
_SUBQUERY_OPEN_RE = re.compile(r"\(\s*(?=(?:SELECT|WITH)\b)", re.IGNORECASE)
_CTE_NAME_RE = re.compile(
    rf"(?:\bWITH(?:\s+RECURSIVE)?|,)\s*({_IDENT})\s*(?:\(([^)]*)\)\s*)?AS\s*\(",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TableRef:
    """A table in a FROM/JOIN clause and the alias it is referenced by."""

    name: str
    alias: str | None = None


@dataclass(frozen=True)
class ColumnRef:
    """A column reference; ``qualifier`` is the table or alias prefix if any."""

    column: str
    qualifier: str | None = None
    clause: str = "select"


@dataclass
class SelectBlock:
    """One SELECT statement with nested subqueries blanked out."""

    text: str
    clauses: dict[str, str] = field(default_factory=dict)


# ----------------------------------------------------------------------------
# Text normalization
# ----------------------------------------------------------------------------


def unquote_identifier(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] in "`\"[" and name[-1] in "`\"]":
        return name[1:-1]
    return name


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving string literals intact."""
    literals: list[str] = []

    def _stash(match: re.Match) -> str:
        literals.append(match.group(0))
        return f"\x00{len(literals) - 1}\x00"

    stashed = _STRING_RE.sub(_stash, sql)
    stashed = _BLOCK_COMMENT_RE.sub(" ", stashed)
    stashed = _LINE_COMMENT_RE.sub("", stashed)
    return re.sub(r"\x00(\d+)\x00", lambda m: literals[int(m.group(1))], stashed)


def clean_sql(sql: str) -> str:
    """Strip comments, surrounding whitespace and trailing semicolons."""
    cleaned = strip_comments(sql or "").strip()
    while cleaned.endswith(";"):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def mask_literals(sql: str) -> str:
    """Blank the inside of string literals; output has the same length."""
    return _STRING_RE.sub(lambda m: "'" + " " * (len(m.group(0)) - 2) + "'", sql)


def split_statements(sql: str) -> list[str]:
    return [clean_sql(s) for s in sqlparse.split(strip_comments(sql or "")) if clean_sql(s)]


def _depths(text: str) -> list[int]:
    depths: list[int] = []
    depth = 0
    for ch in text:
        if ch == ")":
            depth = max(depth - 1, 0)
        depths.append(depth)
        if ch == "(":
            depth += 1
    return depths


def _top_level(pattern: re.Pattern, masked: str) -> list[re.Match]:
    depths = _depths(masked)
    return [m for m in pattern.finditer(masked) if depths[m.start()] == 0]


def _matching_paren(text: str, open_index: int) -> int:
    depth = 0
    for index in range(open_index, len(text)):
        if text[index] == "(":
            depth += 1
        elif text[index] == ")":
            depth -= 1
            if depth == 0:
                return index
    return len(text) - 1


def split_top_level(text: str, separator: str = ",") -> list[str]:
    """Split on ``separator`` outside parentheses and string literals."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in "'\"`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        elif ch == separator and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [part for part in parts if part]


def _split_at(text: str, pattern: re.Pattern) -> list[str]:
    """Split ``text`` on top-level matches of ``pattern`` only."""
    pieces = []
    start = 0
    for match in _top_level(pattern, mask_literals(text)):
        pieces.append(text[start : match.start()])
        start = match.end()
    pieces.append(text[start:])
    return pieces


# ----------------------------------------------------------------------------
# Statement shape
# ----------------------------------------------------------------------------

_MAIN_KEYWORDS = ("SELECT", "INSERT", "UPDATE", "DELETE", "MERGE", "REPLACE")


def _leading_keyword(tokens) -> str:
    for token in tokens:
        if token.is_whitespace or token.ttype in Comment:
            continue
        if isinstance(token, Parenthesis):
            return _leading_keyword(token.tokens[1:-1])
        return token.normalized.upper() if token.ttype in Keyword else ""
    return ""


def statement_type(sql: str) -> str:
    """
    Leading statement keyword from the sqlparse token stream. For ``WITH`` the
    CTE definitions are skipped and the keyword of the main statement is
    returned (``WITH t AS (…) DELETE …`` is a DELETE).
    """
    cleaned = clean_sql(sql)
    if not cleaned:
        return ""
    statement = sqlparse.parse(cleaned)[0]
    keyword = _leading_keyword(statement.tokens)
    if keyword != "WITH":
        return keyword

    # CTE bodies are grouped as identifiers or parentheses; the first
    # top-level DML keyword after them is the main statement
    for token in statement.tokens:
        if token.ttype in DML or (
            token.ttype in Keyword and token.normalized.upper() in _MAIN_KEYWORDS
        ):
            return token.normalized.upper()
    return "WITH"


def is_statement_type(sql: str, *types: str) -> bool:
    return statement_type(sql) in {t.upper() for t in types}


def extract_cte_names(sql: str) -> set[str]:
    masked = mask_literals(clean_sql(sql))
    if not re.match(r"\s*WITH\b", masked, re.IGNORECASE):
        return set()
    return {unquote_identifier(m.group(1)).lower() for m in _top_level(_CTE_NAME_RE, masked)}


def split_union(sql: str) -> list[str]:
    """Split a statement into its top-level set-operation branches."""
    cleaned = clean_sql(sql)
    masked = mask_literals(cleaned)
    bounds = [0]
    for match in _top_level(_SET_OP_RE, masked):
        bounds.extend([match.start(), match.end()])
    bounds.append(len(cleaned))
    branches = []
    for start, end in zip(bounds[::2], bounds[1::2]):
        branch = cleaned[start:end].strip()
        while branch.startswith("(") and _matching_paren(branch, 0) == len(branch) - 1:
            branch = branch[1:-1].strip()
        if branch:
            branches.append(branch)
    return branches


def _subquery_spans(text: str) -> list[tuple[int, int]]:
    """(open, close) paren offsets of each outermost ``( SELECT … )``."""
    masked = mask_literals(text)
    spans = []
    index = 0
    while True:
        match = _SUBQUERY_OPEN_RE.search(masked, index)
        if not match:
            break
        close = _matching_paren(masked, match.start())
        spans.append((match.start(), close))
        index = close + 1
    return spans


def _blank_subqueries(text: str) -> str:
    """Replace the body of every ``( SELECT … )`` with spaces."""
    out = list(text)
    for open_index, close in _subquery_spans(text):
        for pos in range(open_index + 1, close):
            out[pos] = " "
    return "".join(out)


def _subqueries(text: str) -> list[str]:
    return [text[open_index + 1 : close] for open_index, close in _subquery_spans(text)]


@dataclass(frozen=True)
class CTEDefinition:
    name: str
    columns: tuple[str, ...]
    body: str


def _cte_definitions(text: str) -> tuple[str, list[CTEDefinition]]:
    """Return (main statement, CTE definitions in order) for a ``WITH`` statement."""
    masked = mask_literals(text)
    if not re.match(r"\s*WITH\b", masked, re.IGNORECASE):
        return text, []
    definitions: list[CTEDefinition] = []
    index = 0
    last_close = 0
    depths = _depths(masked)
    while True:
        match = _CTE_NAME_RE.search(masked, index)
        if not match or depths[match.start()] != 0:
            break
        if definitions and masked[last_close : match.start()].strip():
            break
        open_index = match.end() - 1
        close = _matching_paren(masked, open_index)
        columns = tuple(
            unquote_identifier(c).lower() for c in split_top_level(match.group(2) or "")
        )
        definitions.append(
            CTEDefinition(
                name=unquote_identifier(match.group(1)).lower(),
                columns=columns,
                body=text[open_index + 1 : close],
            )
        )
        last_close = close + 1
        index = last_close
    return text[last_close:].strip(), definitions


def _strip_cte_prefix(text: str) -> tuple[str, list[str]]:
    """Return (main statement, CTE bodies) for a ``WITH`` statement."""
    main, definitions = _cte_definitions(text)
    return main, [d.body for d in definitions]


def _clauses(block: str) -> dict[str, str]:
    masked = mask_literals(block)
    matches = _top_level(_CLAUSE_RE, masked)
    clauses: dict[str, str] = {}
    for position, match in enumerate(matches):
        name = re.sub(r"\s+", "_", match.group(1).lower())
        end = matches[position + 1].start() if position + 1 < len(matches) else len(block)
        if name not in clauses:
            clauses[name] = masked[match.end() : end].strip()
    return clauses


def iter_select_blocks(sql: str) -> Iterator[SelectBlock]:
    """
    Yield every SELECT in the statement: set-operation branches, CTE bodies and
    parenthesized subqueries. Clause text in each block has literals masked and
    nested subqueries blanked.
    """
    pending = [clean_sql(sql)]
    while pending:
        text = pending.pop(0)
        main, cte_bodies = _strip_cte_prefix(text)
        pending.extend(cte_bodies)
        for branch in split_union(main):
            pending.extend(_subqueries(branch))
            flat = _blank_subqueries(branch)
            yield SelectBlock(text=flat, clauses=_clauses(flat))


# ----------------------------------------------------------------------------
# Tables
# ----------------------------------------------------------------------------


def _parse_relation(head: str) -> tuple[str, str, str | None, str]:
    """
    Split one FROM item into (kind, target, alias, leftover). ``kind`` is
    ``table``, ``function``, ``derived`` (subquery or VALUES) or ``group``
    (a parenthesized join list); ``leftover`` is whatever text was not
    understood.
    """
    head = _INDEX_HINT_RE.sub(" ", head).strip()
    head = re.sub(r"^(?:LATERAL|ONLY)\s+", "", head, flags=re.IGNORECASE)
    if head.startswith("("):
        close = _matching_paren(head, 0)
        target = head[1:close]
        rest = head[close + 1 :]
        if not target.strip() or re.match(r"\s*(?:SELECT|WITH|VALUES)\b", target, re.IGNORECASE):
            kind = "derived"
        else:
            kind = "group"
    else:
        path = re.match(rf"{_IDENT}(?:\s*\.\s*{_IDENT})*", head)
        if not path:
            return "table", "", None, head
        target = path.group(0)
        rest = head[path.end() :]
        kind = "table"
        if rest.lstrip().startswith("("):
            offset = len(rest) - len(rest.lstrip())
            rest = rest[_matching_paren(rest, offset) + 1 :]
            kind = "function"

    alias = None
    named = re.match(rf"\s*(?:AS\s+)?({_IDENT})(?:\s*\([^)]*\))?", rest, re.IGNORECASE)
    if named and named.group(1).upper() not in SQL_KEYWORDS:
        alias = unquote_identifier(named.group(1))
        rest = rest[named.end() :]
    return kind, target, alias, rest.strip()


def _parse_from_items(from_text: str) -> tuple[list[TableRef], set[str], list[str]]:
    tables: list[TableRef] = []
    derived: set[str] = set()
    leftovers: list[str] = []
    for item in split_top_level(from_text):
        for segment in _split_at(item, _JOIN_SPLIT_RE):
            head = _split_at(segment, _JOIN_CONDITION_RE)[0].strip()
            if not head:
                continue
            kind, target, alias, leftover = _parse_relation(head)
            if leftover:
                leftovers.append(leftover)
            if kind == "group":
                inner_tables, inner_derived, inner_leftovers = _parse_from_items(target)
                tables.extend(inner_tables)
                derived |= inner_derived
                leftovers.extend(inner_leftovers)
            if kind != "table":
                if alias:
                    derived.add(alias.lower())
                continue
            if target:
                name = ".".join(unquote_identifier(p) for p in re.split(r"\s*\.\s*", target))
                tables.append(TableRef(name=name, alias=alias))
    return tables, derived, leftovers


def _parse_from_clause(from_text: str) -> tuple[list[TableRef], set[str]]:
    """Return real table refs plus aliases of derived tables/functions."""
    tables, derived, _ = _parse_from_items(from_text)
    return tables, derived


def extract_table_refs(sql: str) -> list[TableRef]:
    """All FROM/JOIN table references across every SELECT block, CTE names excluded."""
    ctes = extract_cte_names(sql)
    refs: list[TableRef] = []
    for block in iter_select_blocks(sql):
        tables, _ = _parse_from_clause(block.clauses.get("from", ""))
        refs.extend(t for t in tables if t.name.lower() not in ctes)
    return refs


def extract_table_names(sql: str) -> list[str]:
    """Distinct table names in first-seen order."""
    seen: dict[str, str] = {}
    for ref in extract_table_refs(sql):
        seen.setdefault(ref.name.lower(), ref.name)
    return list(seen.values())


def extract_aliases(sql: str) -> dict[str, str]:
    """Map of lower-cased alias (and bare table name) to table name."""
    aliases: dict[str, str] = {}
    for ref in extract_table_refs(sql):
        aliases.setdefault(ref.name.lower(), ref.name)
        aliases.setdefault(ref.name.lower().rsplit(".", 1)[-1], ref.name)
        if ref.alias:
            aliases[ref.alias.lower()] = ref.name
    return aliases


def derived_aliases(sql: str) -> set[str]:
    """Aliases that name CTEs, subqueries or table functions rather than tables."""
    names = set(extract_cte_names(sql))
    for block in iter_select_blocks(sql):
        _, derived = _parse_from_clause(block.clauses.get("from", ""))
        names |= derived
    return names


def unparsed_relations(sql: str) -> list[str]:
    """FROM/JOIN text that could not be read as a table, subquery or function."""
    leftovers: list[str] = []
    for block in iter_select_blocks(sql):
        _, _, unparsed = _parse_from_items(block.clauses.get("from", ""))
        leftovers.extend(unparsed)
    return leftovers


def has_explicit_join(sql: str) -> bool:
    return bool(_JOIN_SPLIT_RE.search(mask_literals(clean_sql(sql))))


def has_comma_join(sql: str) -> bool:
    """True when any FROM clause lists several relations separated by commas."""
    for block in iter_select_blocks(sql):
        if len(split_top_level(block.clauses.get("from", ""))) > 1:
            return True
    return False


# ----------------------------------------------------------------------------
# Columns
# ----------------------------------------------------------------------------


def split_select_item(item: str) -> tuple[str, str | None]:
    """Split ``expr [AS] alias`` into (expr, alias)."""
    item = item.strip()
    explicit = re.match(rf"^(.*\S)\s+AS\s+({_IDENT})\s*$", item, re.IGNORECASE | re.DOTALL)
    if explicit:
        return explicit.group(1), unquote_identifier(explicit.group(2))
    implicit = re.match(rf"^(.*[\w)\]`\"'])\s+({_IDENT})\s*$", item, re.DOTALL)
    if implicit:
        expr, alias = implicit.groups()
        dangling = re.search(
            r"\b(?:AND|OR|NOT|IS|IN|LIKE|WHEN|THEN|ELSE|CASE|DISTINCT|ALL)\s*$",
            expr,
            re.IGNORECASE,
        )
        if alias.upper() not in SQL_KEYWORDS and not dangling:
            return expr, unquote_identifier(alias)
    return item, None


def select_aliases(block: SelectBlock) -> set[str]:
    aliases = set()
    for item in split_top_level(block.clauses.get("select", "")):
        _, alias = split_select_item(item)
        if alias:
            aliases.add(alias.lower())
    return aliases


def _refs_in_expression(expression: str, clause: str) -> list[ColumnRef]:
    refs: list[ColumnRef] = []
    previous = ""
    for match in _PATH_RE.finditer(expression):
        token = match.group(0)
        tail = expression[match.end() :].lstrip()
        before = expression[: match.start()].rstrip()
        parts = [unquote_identifier(p) for p in re.split(r"\s*\.\s*", token)]
        word = previous
        previous = token.upper()
        if tail.startswith("("):
            continue
        if before.endswith("::") or word == "AS":
            continue
        if len(parts) == 1:
            if token.upper() in SQL_KEYWORDS:
                continue
            refs.append(ColumnRef(column=parts[0], clause=clause))
        elif parts[-1] != "*":
            refs.append(ColumnRef(column=parts[-1], qualifier=parts[-2], clause=clause))
    return refs


def _on_conditions(from_text: str) -> list[str]:
    conditions = []
    for segment in _JOIN_SPLIT_RE.split(from_text):
        pieces = re.split(r"\bON\b", segment, maxsplit=1, flags=re.IGNORECASE)
        if len(pieces) == 2:
            conditions.append(pieces[1])
        using = re.search(r"\bUSING\s*\(([^)]*)\)", segment, re.IGNORECASE)
        if using:
            conditions.append(using.group(1))
    return conditions


def block_table_refs(block: SelectBlock) -> tuple[list[TableRef], set[str]]:
    """Real tables and derived-relation aliases of a single block's FROM clause."""
    return _parse_from_clause(block.clauses.get("from", ""))


def block_column_refs(block: SelectBlock) -> list[ColumnRef]:
    """Column references of one block; output-column aliases are skipped outside SELECT."""
    refs: list[ColumnRef] = []
    aliases = select_aliases(block)
    for item in split_top_level(block.clauses.get("select", "")):
        expression, _ = split_select_item(item)
        refs.extend(_refs_in_expression(expression, "select"))
    for condition in _on_conditions(block.clauses.get("from", "")):
        refs.extend(_refs_in_expression(condition, "join"))
    for clause in ("where", "group_by", "having", "order_by"):
        for ref in _refs_in_expression(block.clauses.get(clause, ""), clause):
            if ref.qualifier is None and ref.column.lower() in aliases:
                continue
            refs.append(ref)
    return refs


def extract_column_refs(sql: str) -> list[ColumnRef]:
    """
    Column references from SELECT, WHERE, JOIN … ON, GROUP BY, HAVING and
    ORDER BY of every block. ``*`` items are not column references (see
    ``extract_star_qualifiers``).
    """
    refs: list[ColumnRef] = []
    for block in iter_select_blocks(sql):
        refs.extend(block_column_refs(block))
    return refs


def extract_star_qualifiers(sql: str) -> list[str | None]:
    """``None`` for each bare ``*`` select item, the prefix for each ``t.*``."""
    stars: list[str | None] = []
    for block in iter_select_blocks(sql):
        for item in split_top_level(block.clauses.get("select", "")):
            item = re.sub(r"^\s*(?:DISTINCT|ALL)\s+", "", item, flags=re.IGNORECASE)
            if item == "*":
                stars.append(None)
                continue
            match = re.fullmatch(rf"({_IDENT}(?:\s*\.\s*{_IDENT})*)\s*\.\s*\*", item)
            if match:
                stars.append(unquote_identifier(re.split(r"\s*\.\s*", match.group(1))[-1]))
    return stars


def select_list_span(sql: str) -> tuple[int, int] | None:
    """Offsets of the first top-level SELECT list in ``sql`` (already cleaned)."""
    masked = _blank_subqueries(mask_literals(sql))
    matches = _top_level(_CLAUSE_RE, masked)
    for index, match in enumerate(matches):
        if match.group(1).upper() == "SELECT":
            start = match.end()
            distinct = re.match(r"\s*(?:DISTINCT|ALL)\b", masked[start:], re.IGNORECASE)
            if distinct:
                start += distinct.end()
            end = matches[index + 1].start() if index + 1 < len(matches) else len(sql)
            return start, end
    return None


def add_where_condition(sql: str, condition: str) -> str:
    """
    AND a predicate into the top-level WHERE of a single SELECT, inserting a
    WHERE before GROUP BY / HAVING / ORDER BY / LIMIT when none exists.
    """
    masked = _blank_subqueries(mask_literals(sql))
    matches = _top_level(_CLAUSE_RE, masked)
    where = next((m for m in matches if m.group(1).upper() == "WHERE"), None)
    tail_keywords = {"GROUP BY", "HAVING", "ORDER BY", "LIMIT", "OFFSET", "FETCH", "WINDOW"}
    if where is not None:
        after = [m for m in matches if m.start() > where.start()]
        end = after[0].start() if after else len(sql)
        existing = sql[where.end() : end].strip()
        suffix = (" " + sql[end:].lstrip()) if end < len(sql) else ""
        return f"{sql[: where.start()]}WHERE ({existing}) AND ({condition}){suffix}"
    tail = next(
        (m for m in matches if re.sub(r"\s+", " ", m.group(1).upper()) in tail_keywords),
        None,
    )
    if tail is None:
        return f"{sql.rstrip()} WHERE {condition}"
    return f"{sql[: tail.start()].rstrip()} WHERE {condition} {sql[tail.start():]}"


# ----------------------------------------------------------------------------
# Output-column lineage
# ----------------------------------------------------------------------------

PASSTHROUGH = "*"

Lineage = dict[str, set[str]]


def _clause_span(flat: str, name: str) -> tuple[int, int] | None:
    matches = _top_level(_CLAUSE_RE, flat)
    for index, match in enumerate(matches):
        if re.sub(r"\s+", "_", match.group(1).lower()) == name:
            end = matches[index + 1].start() if index + 1 < len(matches) else len(flat)
            return match.end(), end
    return None


def _everything(lineage: Lineage) -> set[str]:
    merged: set[str] = set()
    for columns in lineage.values():
        merged |= columns
    return merged


def _renamed(lineage: Lineage, columns: tuple[str, ...]) -> Lineage:
    # positional renames are not tracked; every new name may carry any source
    merged = _everything(lineage)
    return {column: set(merged) for column in columns}


def _lookup(lineage: Lineage | None, column: str) -> set[str]:
    if lineage is None or (column not in lineage and PASSTHROUGH in lineage):
        return {column}
    if column in lineage:
        return set(lineage[column])
    return _everything(lineage)


def _resolve(ref: ColumnRef, relations: dict[str, Lineage | None]) -> set[str]:
    column = ref.column.lower()
    if ref.qualifier:
        return _lookup(relations.get(ref.qualifier.lower()), column)
    found: set[str] = set()
    matched = False
    for lineage in relations.values():
        if lineage is not None and column in lineage:
            found |= lineage[column]
            matched = True
    if matched:
        return found
    if not relations or any(
        lineage is None or PASSTHROUGH in lineage for lineage in relations.values()
    ):
        return {column}
    merged: set[str] = set()
    for lineage in relations.values():
        merged |= _everything(lineage)
    return merged


def _output_names(expression: str, alias: str | None) -> list[str]:
    if alias:
        return [alias.lower()]
    stripped = expression.strip()
    if re.fullmatch(rf"{_IDENT}(?:\s*\.\s*{_IDENT})*", stripped):
        return [unquote_identifier(re.split(r"\s*\.\s*", stripped)[-1]).lower()]
    # MySQL labels an unaliased expression with its text, PostgreSQL with the function name
    names = [re.sub(r"\s+", " ", stripped).lower()]
    call = _FUNCTION_CALL_RE.match(stripped)
    if call:
        names.append(unquote_identifier(call.group(1)).lower())
    return names


def _derived_relations(masked: str, flat: str, env: dict[str, Lineage]) -> dict[str, Lineage]:
    span = _clause_span(flat, "from")
    if span is None:
        return {}
    relations: dict[str, Lineage] = {}
    for open_index, close in _subquery_spans(masked):
        if not span[0] <= open_index < span[1]:
            continue
        tail = masked[close + 1 :]
        named = re.match(rf"\s*(?:AS\s+)?({_IDENT})(?:\s*\(([^)]*)\))?", tail, re.IGNORECASE)
        if not named or named.group(1).upper() in SQL_KEYWORDS:
            continue
        lineage = _statement_lineage(masked[open_index + 1 : close], env)
        if named.group(2):
            lineage = _renamed(
                lineage, tuple(unquote_identifier(c).lower() for c in split_top_level(named.group(2)))
            )
        relations[unquote_identifier(named.group(1)).lower()] = lineage
    return relations


def _branch_lineage(masked: str, env: dict[str, Lineage]) -> list[tuple[list[str], set[str]]]:
    """(candidate output names, source columns) per select item of one SELECT."""
    flat = _blank_subqueries(masked)
    tables, _ = _parse_from_clause(_clauses(flat).get("from", ""))
    relations: dict[str, Lineage | None] = {}
    for ref in tables:
        key = (ref.alias or ref.name.rsplit(".", 1)[-1]).lower()
        relations[key] = env.get(ref.name.lower())
    relations.update(_derived_relations(masked, flat, env))

    span = _clause_span(flat, "select")
    select_text = masked[span[0] : span[1]] if span else ""
    select_text = re.sub(
        r"^\s*(?:DISTINCT(?:\s+ON\s*\([^)]*\))?|ALL)\s+", "", select_text, flags=re.IGNORECASE
    )

    entries: list[tuple[list[str], set[str]]] = []
    for item in split_top_level(select_text):
        expression, alias = split_select_item(item)
        star = re.fullmatch(rf"(?:({_IDENT})\s*\.\s*)?\*", expression.strip())
        if star and not alias:
            if star.group(1):
                targets = [relations.get(unquote_identifier(star.group(1)).lower())]
            else:
                targets = list(relations.values()) or [None]
            for lineage in targets:
                if lineage is None:
                    entries.append(([PASSTHROUGH], set()))
                else:
                    entries.extend(([name], set(columns)) for name, columns in lineage.items())
            continue

        columns: set[str] = set()
        for ref in _refs_in_expression(_blank_subqueries(expression), "select"):
            columns |= _resolve(ref, relations)
        for subquery in _subqueries(expression):
            columns |= _everything(_statement_lineage(subquery, env))
            columns |= {ref.column.lower() for ref in extract_column_refs(subquery)}
        entries.append((_output_names(expression, alias), columns))
    return entries


def _statement_lineage(text: str, env: dict[str, Lineage]) -> Lineage:
    main, definitions = _cte_definitions(text)
    env = dict(env)
    for definition in definitions:
        lineage = _statement_lineage(definition.body, env)
        env[definition.name] = (
            _renamed(lineage, definition.columns) if definition.columns else lineage
        )

    branches = [_branch_lineage(mask_literals(branch), env) for branch in split_union(main)]
    if not branches:
        return {}
    first = branches[0]
    aligned = all(
        len(branch) == len(first) and all(PASSTHROUGH not in names for names, _ in branch)
        for branch in branches[1:]
    )
    merged_all: set[str] = set()
    for branch in branches:
        for _, columns in branch:
            merged_all |= columns

    sources: Lineage = {}
    for position, (names, columns) in enumerate(first):
        if not aligned:
            columns = merged_all
        elif len(branches) > 1:
            columns = columns.union(*(branch[position][1] for branch in branches[1:]))
        for name in names:
            sources.setdefault(name, set()).update(columns)
    return sources


def output_column_sources(sql: str) -> dict[str, set[str]]:
    """
    Map each output column name (lower-cased) of the statement to the base
    column names it is computed from.

    Aliases are followed through derived tables and CTEs, so
    ``SELECT e FROM (SELECT email AS e FROM customers) t`` maps ``e`` to
    ``email``. Unaliased expressions are keyed by their text and, for function
    calls, by the function name. A ``*`` key means a star over a base table
    passes columns through under their own names; union branches are matched
    by position. When names cannot be lined up every output is given every
    source.
    """
    return _statement_lineage(mask_literals(clean_sql(sql)), {})
