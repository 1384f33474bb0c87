"""
Layer boundaries.

1. requisition_kernel/** may NOT import requisition_services or
   requisition_config.  The kernel never depends upward; the backend
   container passes it plain values.

2. requisition_kernel/domain/** is pure: no database, no services, no
   selectors, no SQLAlchemy.

3. requisition_config/** may NOT import requisition_services.

These tests read source code via AST.
"""

import ast
import glob
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _python_files(package: str) -> list[str]:
    """All .py files under a top-level package directory."""
    return sorted(glob.glob(str(ROOT / package / "**" / "*.py"), recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    """Extract (line_number, module_string) for all imports in a file."""
    source = Path(filepath).read_text()
    tree = ast.parse(source, filename=filepath)

    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom):
            if node.module:
                results.append((node.lineno, node.module))
    return results


def _violations(package: str, forbidden: tuple[str, ...]) -> list[str]:
    found: list[str] = []
    for filepath in _python_files(package):
        for lineno, module in _extract_imports(filepath):
            for prefix in forbidden:
                if module == prefix or module.startswith(f"{prefix}."):
                    rel = Path(filepath).relative_to(ROOT)
                    found.append(f"  {rel}:{lineno} imports '{module}'")
    return found


class TestKernelNoUpwardDependencies:

    def test_packages_exist(self):
        assert _python_files("requisition_kernel")
        assert _python_files("requisition_services")
        assert _python_files("requisition_config")

    def test_kernel_does_not_import_outer_layers(self):
        violations = _violations(
            "requisition_kernel", ("requisition_services", "requisition_config")
        )
        assert not violations, (
            "Kernel boundary violation: requisition_kernel/** must not import "
            "requisition_services or requisition_config:\n" + "\n".join(violations)
        )

    def test_config_does_not_import_services(self):
        violations = _violations("requisition_config", ("requisition_services",))
        assert not violations, "\n".join(violations)


class TestDomainPurity:
    """requisition_kernel/domain/** holds pure logic only."""

    FORBIDDEN = (
        "sqlalchemy",
        "requisition_kernel.db",
        "requisition_kernel.services",
        "requisition_kernel.selectors",
    )

    def test_domain_has_no_persistence_imports(self):
        violations = _violations("requisition_kernel/domain", self.FORBIDDEN)
        assert not violations, (
            "Domain purity violation:\n" + "\n".join(violations)
        )
