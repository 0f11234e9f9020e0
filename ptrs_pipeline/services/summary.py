from __future__ import annotations

from ..models.processing_result import PipelineRunResult

"""SUMMARY line rendering.

Format:
    SUMMARY run=<id> rows=<n> excluded=<n> errors=<n> status=<verdict> elapsed_sec=<s>
"""

__all__ = [
    "format_seconds",
    "render_summary_line",
]


def format_seconds(value: float) -> str:
    """Render seconds without scientific notation or a trailing ``.0``."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip('0').rstrip('.')
    return f"{value:.3f}".rstrip('0').rstrip('.')


def render_summary_line(result: PipelineRunResult) -> str:
    """Render the SUMMARY line for one pipeline run.

    >>> r = PipelineRunResult(run_id="r1", rows=10, excluded_rows=1, error_rows=0,
    ...                       status="passed", elapsed_seconds=2.0)
    >>> render_summary_line(r)
    'SUMMARY run=r1 rows=10 excluded=1 errors=0 status=passed elapsed_sec=2'
    """
    return (
        f"SUMMARY run={result.run_id} "
        f"rows={result.rows} "
        f"excluded={result.excluded_rows} "
        f"errors={result.error_rows} "
        f"status={result.status} "
        f"elapsed_sec={format_seconds(result.elapsed_seconds)}"
    )
