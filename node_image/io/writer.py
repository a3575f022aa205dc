"""
Writer — serialize the pipeline receipt to JSON.

Filesystem layout per run:
    <artifacts_root>/<run_id>/pipeline_receipt.json
    <artifacts_root>/<run_id>/bin/<binary>        (only after a successful build)
"""
import json
from pathlib import Path
from typing import Optional

from node_image.io.schema import PipelineReceipt

RECEIPT_NAME = "pipeline_receipt.json"


def write_receipt(receipt: PipelineReceipt, output_dir: Path) -> Path:
    """
    Write pipeline_receipt.json into *output_dir*.

    Creates *output_dir* if it does not exist.  Returns the file path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / RECEIPT_NAME
    path.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return path


def read_receipt(output_dir: Path) -> Optional[PipelineReceipt]:
    path = output_dir / RECEIPT_NAME
    if not path.exists():
        return None
    return PipelineReceipt.model_validate_json(path.read_text())
