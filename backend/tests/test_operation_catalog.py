"""
Operation catalog: lookups, cost arithmetic and construction rules.
"""
import pytest

from models.operations import OperationDefinition, OPERATION_CATALOG
from services.operation_catalog import OperationCatalog, normalize_action_key, normalize_quantity


@pytest.fixture
def catalog():
    return OperationCatalog.from_config()


class TestCatalogLookups:

    def test_default_catalog_has_every_operation_in_order(self, catalog):
        ids = [op.id for op in catalog.list_operations()]
        assert ids == [
            "upload_pdf",
            "merge_documents",
            "split_pages",
            "rotate_pages",
            "delete_pages",
            "watermark",
            "normalize_pdf",
            "export_pdf",
        ]
        assert len(catalog) == 8

    def test_lookup_is_case_and_whitespace_insensitive(self, catalog):
        assert catalog.get_operation("  Split_Pages ").id == "split_pages"

    def test_unknown_or_empty_id_is_absent(self, catalog):
        assert catalog.get_operation("ocr_pages") is None
        assert catalog.get_operation("") is None
        assert catalog.get_operation(None) is None

    def test_merge_requires_both_files(self, catalog):
        merge = catalog.get_operation("merge_documents")
        assert merge.requires_upload and merge.requires_second_file

    def test_upload_needs_no_existing_upload(self, catalog):
        upload = catalog.get_operation("upload_pdf")
        assert upload.requires_upload is False
        assert upload.credit_cost == 0


class TestCost:

    def test_cost_scales_with_quantity(self, catalog):
        assert catalog.cost("rotate_pages", 4) == 4

    @pytest.mark.parametrize("quantity", [0, -3, None, "abc"])
    def test_quantity_below_one_counts_as_one(self, catalog, quantity):
        assert catalog.cost("watermark", quantity) == 1

    def test_free_operation_costs_nothing(self, catalog):
        assert catalog.cost("export_pdf", 10) == 0

    def test_unknown_operation_has_no_cost(self, catalog):
        assert catalog.cost("ocr_pages", 1) is None

    def test_cost_is_pure(self, catalog):
        assert catalog.cost("split_pages", 3) == catalog.cost("split_pages", 3) == 3


class TestConstruction:

    def test_price_table_overrides_catalog_cost(self):
        catalog = OperationCatalog.from_config({"watermark": 3})
        assert catalog.cost("watermark") == 3
        # Entries missing from the table keep their own cost
        assert catalog.cost("split_pages") == 1

    def test_negative_price_is_rejected(self):
        with pytest.raises(ValueError):
            OperationCatalog.from_config({"watermark": -1})

    def test_duplicate_ids_are_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            OperationCatalog([OPERATION_CATALOG[1], OPERATION_CATALOG[1]])

    def test_ids_must_be_lower_case_keys(self):
        bad = OperationDefinition(id="Watermark", name="W", description="", credit_cost=1)
        with pytest.raises(ValueError):
            OperationCatalog([bad])

    def test_definitions_are_immutable(self, catalog):
        with pytest.raises(Exception):
            catalog.get_operation("watermark").credit_cost = 0


def test_normalizers():
    assert normalize_action_key(" Merge_Documents ") == "merge_documents"
    assert normalize_action_key("   ") is None
    assert normalize_quantity("5") == 5
    assert normalize_quantity(0) == 1
