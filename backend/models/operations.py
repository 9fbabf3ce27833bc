"""Operation Catalog Models

Static definitions of every chargeable PDF operation:
- Display name and description
- Fixed credit cost per invocation unit
- Upload requirements (primary / secondary document)

Definitions are loaded once at process start and never mutated.
"""

from pydantic import BaseModel
from typing import Optional, Dict
from enum import Enum


class OperationCategory(str, Enum):
    """Grouping used by the editor toolbar"""
    CORE = "core"
    EDIT = "edit"
    SIGN = "sign"
    ADVANCED = "advanced"


class OperationUnit(str, Enum):
    """What one invocation unit is counted in"""
    PAGE = "page"
    DOCUMENT = "document"


class OperationDefinition(BaseModel):
    """One chargeable action.

    `id` is the lower-case action key referenced by ledger entries and jobs.
    """
    id: str
    name: str
    description: str
    credit_cost: int = 0
    requires_upload: bool = False
    requires_second_file: bool = False

    category: OperationCategory = OperationCategory.CORE
    unit: Optional[OperationUnit] = None

    model_config = {"frozen": True, "extra": "forbid"}


# ============================================================================
# Default catalog
# ============================================================================

OPERATION_CATALOG = [
    OperationDefinition(
        id="upload_pdf",
        name="Upload PDF",
        description="Upload a PDF to begin working.",
        credit_cost=0,
        requires_upload=False,
        requires_second_file=False,
        category=OperationCategory.CORE,
    ),
    OperationDefinition(
        id="merge_documents",
        name="Merge PDFs",
        description="Combine multiple PDFs into a single file.",
        credit_cost=1,
        requires_upload=True,
        requires_second_file=True,
        category=OperationCategory.CORE,
        unit=OperationUnit.DOCUMENT,
    ),
    OperationDefinition(
        id="split_pages",
        name="Split PDF",
        description="Extract selected pages into a new PDF.",
        credit_cost=1,
        requires_upload=True,
        category=OperationCategory.CORE,
        unit=OperationUnit.PAGE,
    ),
    OperationDefinition(
        id="rotate_pages",
        name="Rotate pages",
        description="Rotate selected pages by 90, 180, or 270 degrees.",
        credit_cost=1,
        requires_upload=True,
        category=OperationCategory.EDIT,
        unit=OperationUnit.PAGE,
    ),
    OperationDefinition(
        id="delete_pages",
        name="Delete pages",
        description="Remove selected pages from the document.",
        credit_cost=1,
        requires_upload=True,
        category=OperationCategory.EDIT,
        unit=OperationUnit.PAGE,
    ),
    OperationDefinition(
        id="watermark",
        name="Add watermark",
        description="Apply a watermark to the document.",
        credit_cost=1,
        requires_upload=True,
        category=OperationCategory.SIGN,
        unit=OperationUnit.DOCUMENT,
    ),
    OperationDefinition(
        id="normalize_pdf",
        name="Normalize PDF",
        description="Rebuild the PDF for consistent structure.",
        credit_cost=1,
        requires_upload=True,
        category=OperationCategory.ADVANCED,
        unit=OperationUnit.DOCUMENT,
    ),
    OperationDefinition(
        id="export_pdf",
        name="Export PDF",
        description="Download the latest PDF output.",
        credit_cost=0,
        requires_upload=True,
        category=OperationCategory.CORE,
    ),
]

# Price table; takes precedence over the catalog's own credit_cost
OPERATION_PRICING: Dict[str, int] = {
    "upload_pdf": 0,
    "merge_documents": 1,
    "split_pages": 1,
    "rotate_pages": 1,
    "delete_pages": 1,
    "watermark": 1,
    "normalize_pdf": 1,
    "export_pdf": 0,
}
