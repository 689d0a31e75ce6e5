import ast
from pathlib import Path

import fcbuild


def test_examples_parse_and_only_use_public_api() -> None:
    examples = sorted(Path(__file__).parent.parent.joinpath("examples").glob("*.py"))
    assert examples

    for path in examples:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        imported = [
            alias.name
            for node in ast.walk(tree)
            if isinstance(node, ast.ImportFrom) and node.module == "fcbuild"
            for alias in node.names
        ]
        assert imported, f"{path.name} does not use fcbuild"
        assert set(imported) <= set(fcbuild.__all__), path.name
