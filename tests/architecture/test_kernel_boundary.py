"""
Kernel boundary and invariants contract.

1. tip_kernel/** may NOT import tip_engines, tip_services or tip_config.
   The kernel never depends upward.

2. tip_kernel/domain/** and tip_engines/** are pure: no ORM or database
   driver imports.

3. Read-side selectors never import write-side services.

4. The kernel invariants declaration is complete.

These tests read source code via AST; they cannot break anything.
"""

import ast
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _python_files(package: str) -> list[Path]:
    return sorted((ROOT / package).rglob("*.py"))


def _is_type_checking_block(node: ast.AST) -> bool:
    if not isinstance(node, ast.If):
        return False
    test = node.test
    return (isinstance(test, ast.Name) and test.id == "TYPE_CHECKING") or (
        isinstance(test, ast.Attribute) and test.attr == "TYPE_CHECKING"
    )


def _extract_imports(filepath: Path) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for runtime imports in a file.

    Imports under ``if TYPE_CHECKING:`` are annotations only and skipped.
    """
    tree = ast.parse(filepath.read_text(), filename=str(filepath))

    results: list[tuple[int, str]] = []
    pending: list[ast.AST] = [tree]
    while pending:
        node = pending.pop()
        if _is_type_checking_block(node):
            pending.extend(node.orelse)
            continue
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
        pending.extend(ast.iter_child_nodes(node))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    found.append(f"  {filepath.relative_to(ROOT)}:{lineno} imports '{module}'")
    return found


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestKernelNoUpwardDependencies:

    FORBIDDEN_PREFIXES = ("tip_engines", "tip_services", "tip_config")

    def test_kernel_files_found(self):
        assert _python_files("tip_kernel")

    def test_kernel_does_not_import_upward_packages(self):
        violations = _violations("tip_kernel", self.FORBIDDEN_PREFIXES)
        assert not violations, (
            "Kernel boundary violation: tip_kernel/** must not import "
            "upward packages:\n" + "\n".join(violations)
        )


class TestPureLayers:

    DB_MODULES = ("sqlalchemy", "psycopg2", "sqlite3", "tip_kernel.db", "tip_kernel.models")

    def test_domain_has_no_orm_imports(self):
        violations = _violations("tip_kernel/domain", self.DB_MODULES)
        assert not violations, (
            "Domain purity violation: tip_kernel/domain/** must not import "
            "ORM/DB packages:\n" + "\n".join(violations)
        )

    def test_engines_have_no_orm_imports(self):
        violations = _violations("tip_engines", self.DB_MODULES)
        assert not violations, (
            "Engine purity violation: tip_engines/** must not touch the "
            "database:\n" + "\n".join(violations)
        )

    def test_engines_do_not_import_services(self):
        violations = _violations("tip_engines", ("tip_services", "tip_kernel.services"))
        assert not violations, "\n".join(violations)

    def test_config_does_not_import_services(self):
        violations = _violations("tip_config", ("tip_services", "tip_kernel.services"))
        assert not violations, "\n".join(violations)


class TestSelectorsAreReadOnly:

    def test_selectors_do_not_import_services(self):
        violations = _violations("tip_kernel/selectors", ("tip_kernel.services", "tip_services"))
        assert not violations, (
            "Selectors are read-only and must not import write-side "
            "services:\n" + "\n".join(violations)
        )


class TestKernelInvariantsDeclaration:

    def test_required_invariants_declared(self):
        from tip_kernel.invariants import KERNEL_INVARIANTS, TipInvariant

        required = {
            "BALANCE_CONSERVATION",
            "APPEND_ONLY_LEDGER",
            "SOURCE_IDEMPOTENCY",
            "SEGMENT_PARTITION",
            "SPLIT_SUM",
            "SINGLE_ACTIVE_GROUP",
            "ATOMIC_MULTI_POST",
        }
        declared = {inv.name for inv in TipInvariant}
        assert not required - declared
        assert KERNEL_INVARIANTS == frozenset(TipInvariant)

    def test_every_invariant_documented(self):
        source = (ROOT / "tip_kernel" / "invariants.py").read_text()
        tree = ast.parse(source)
        cls = next(n for n in tree.body if isinstance(n, ast.ClassDef) and n.name == "TipInvariant")
        body = cls.body
        for i, node in enumerate(body):
            if isinstance(node, ast.Assign):
                nxt = body[i + 1] if i + 1 < len(body) else None
                assert (
                    isinstance(nxt, ast.Expr)
                    and isinstance(nxt.value, ast.Constant)
                    and isinstance(nxt.value.value, str)
                ), f"{node.targets[0].id} has no docstring"
