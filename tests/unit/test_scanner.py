from __future__ import annotations

import textwrap

from recon.tools.scanner import (
    find_annotations,
    find_related_source_files,
    parse_test_file,
    source_name_for_test,
)

PYTHON_SOURCE = textwrap.dedent(
    """\
    import pytest
    from app.billing import invoice


    # @atom IA-007
    @pytest.mark.slow
    def test_invoice_totals():
        assert invoice([1]) == 1


    class TestRefunds:
        def test_full_refund(self):
            def helper():
                pass
            assert helper() is None

        def not_a_test(self):
            pass


    class Helpers:
        def test_ignored(self):
            pass


    def test_unlinked():
        assert True
    """
)


def test_python_tests_are_found_with_class_qualified_names() -> None:
    parsed = parse_test_file("tests/test_billing.py", PYTHON_SOURCE)

    names = [test.test_name for test in parsed.tests]
    assert names == ["test_invoice_totals", "TestRefunds::test_full_refund", "test_unlinked"]
    assert parsed.imports == ["pytest", "app.billing"]


def test_annotation_above_decorator_links_the_test() -> None:
    parsed = parse_test_file("tests/test_billing.py", PYTHON_SOURCE)
    by_name = {test.test_name: test for test in parsed.tests}

    assert by_name["test_invoice_totals"].linked_atom_ids == ["IA-007"]
    assert by_name["test_invoice_totals"].line_number == 7
    assert by_name["test_unlinked"].is_linked is False


def test_annotation_outside_lookback_is_ignored() -> None:
    source = "# @atom IA-001\n\n\n\n\n\n\ndef test_far():\n    pass\n"

    parsed = parse_test_file("tests/test_far.py", source, annotation_lookback=3)

    assert parsed.tests[0].linked_atom_ids == []


def test_unparsable_python_yields_no_tests() -> None:
    parsed = parse_test_file("tests/test_broken.py", "def test_x(:\n")

    assert parsed.tests == []


def test_script_tests_and_duplicate_names() -> None:
    source = textwrap.dedent(
        """\
        import { total } from '../src/cart';

        describe('cart', () => {
          // @atom IA-002
          it('sums items', () => {
            expect(total([1, 2])).toBe(3);
          });

          test("sums items", () => {
            expect(total([])).toBe(0);
          });
        });
        """
    )

    parsed = parse_test_file("tests/cart.spec.ts", source, annotation_lookback=3)

    assert [test.test_name for test in parsed.tests] == ["sums items", "sums items [line 9]"]
    assert parsed.tests[0].linked_atom_ids == ["IA-002"]
    assert parsed.tests[1].linked_atom_ids == []
    assert parsed.tests[0].code.endswith("});")
    assert parsed.imports == ["../src/cart"]


def test_find_annotations_collects_each_id_once() -> None:
    lines = ["# @atom IA-001 and @atom IA-002", "# @atom IA-001", "def test_x():"]

    assert find_annotations(lines, 3, 3, 5) == ["IA-001", "IA-002"]


def test_source_name_for_test_conventions() -> None:
    assert source_name_for_test("tests/test_cart.py") == "cart.py"
    assert source_name_for_test("pkg/cart_test.py") == "cart.py"
    assert source_name_for_test("web/cart.spec.ts") == "cart.ts"
    assert source_name_for_test("web/cart.e2e-spec.ts") == "cart.ts"
    assert source_name_for_test("tests/helpers.py") is None


def test_related_sources_by_name_and_import() -> None:
    sources = ["src/cart.py", "app/billing.py", "src/unrelated.py", "web/cart.ts"]

    python_related = find_related_source_files("tests/test_cart.py", ["app.billing"], sources)
    script_related = find_related_source_files("web/cart.spec.ts", ["./cart"], sources)

    assert python_related == ["src/cart.py", "app/billing.py"]
    assert script_related == ["web/cart.ts"]
