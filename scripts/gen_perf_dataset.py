#!/usr/bin/env python3
"""Synthetic payment dataset generator for performance testing.

Writes a main payment file whose headers match ``config/column_map.yml``
(CSV or XLSX, chosen by the output suffix). Optionally also writes the
vendor master (``--vendors``) and a classification results file covering
every generated payee (``--classification``), so a full ``run`` can be
exercised end to end:

    scripts/gen_perf_dataset.py data/perf.csv --rows 50000 \\
        --vendors data/vendors.csv --classification data/results.csv
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

SMALL_OUTCOME = "Small business for payment times reporting"
NOT_SMALL_OUTCOME = "Not a small business for payment times reporting"
PAYER_NAME = "Example Holdings Pty Ltd"
PAYER_ABN = "11222333444"


def generate_payees(count: int, seed: int = 42) -> pd.DataFrame:
    """Payee master: vendor code, name, 11 digit ABN and whether it is a small business."""
    np.random.seed(seed)
    # 等間隔 + 乱数オフセットで重複しない 11 桁
    offset = np.random.randint(0, 1_000_000_000)
    abns = 10_000_000_000 + offset + np.arange(1, count + 1, dtype=np.int64) * 7_919
    return pd.DataFrame({
        "Code": [f"V{i:05d}" for i in range(1, count + 1)],
        "Name": [f"Supplier {i} Pty Ltd" for i in range(1, count + 1)],
        "ABN": [str(a) for a in abns],
        "Small": np.random.rand(count) < 0.6,
    })


def generate_payments(rows: int, payees: pd.DataFrame, seed: int = 42, credit_ratio: float = 0.03
                      ) -> pd.DataFrame:
    """Payment rows with the raw formatting typical of an AP export.

    Amounts are strings with thousands separators, dates are ``dd/mm/yyyy``
    and roughly ``credit_ratio`` of the rows are negative credit notes.
    """
    np.random.seed(seed + 1)
    pick = np.random.randint(0, len(payees), rows)
    invoice = pd.Timestamp("2024-07-01") + pd.to_timedelta(np.random.randint(0, 180, rows), unit="D")
    paid = invoice + pd.to_timedelta(np.random.randint(0, 90, rows), unit="D")
    amounts = np.round(np.random.uniform(10, 250_000, rows), 2)
    amounts[np.random.rand(rows) < credit_ratio] *= -1

    return pd.DataFrame({
        "Supplier Name": payees["Name"].to_numpy()[pick],
        "Supplier ABN": payees["ABN"].to_numpy()[pick],
        "Invoice No": [f"INV-{i:07d}" for i in range(1, rows + 1)],
        "Invoice Date": invoice.strftime("%d/%m/%Y"),
        "Payment Date": paid.strftime("%d/%m/%Y"),
        "Amount Paid": [f"{a:,.2f}" for a in amounts],
        "Payer": PAYER_NAME,
        "Payer ABN": PAYER_ABN,
        "Vendor Code": payees["Code"].to_numpy()[pick],
    })


def classification_results(payees: pd.DataFrame) -> pd.DataFrame:
    """What the classification tool would return for every payee."""
    return pd.DataFrame({
        "ABN": payees["ABN"],
        "Outcome": np.where(payees["Small"], SMALL_OUTCOME, NOT_SMALL_OUTCOME),
        "Year": "2024-25",
    })


def write_table(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() in (".xlsx", ".xlsm"):
        df.to_excel(path, index=False, engine="openpyxl")
    else:
        df.to_csv(path, index=False, lineterminator="\n")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate synthetic payment datasets for performance testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 50k rows, 2k payees, CSV
  %(prog)s data/perf.csv

  # XLSX with vendor master and classification results
  %(prog)s data/perf.xlsx --rows 20000 --vendors data/vendors.csv --classification data/results.csv
        """,
    )
    parser.add_argument("output", type=Path, help="Main payment file (.csv or .xlsx)")
    parser.add_argument("--rows", type=int, default=50_000, help="Number of payment rows (default: 50,000)")
    parser.add_argument("--payees", type=int, default=2_000, help="Number of distinct payees (default: 2,000)")
    parser.add_argument("--credit-ratio", type=float, default=0.03, help="Share of credit notes (default: 0.03)")
    parser.add_argument("--vendors", type=Path, help="Also write the vendor master here")
    parser.add_argument("--classification", type=Path, help="Also write classification results here")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--dry-run", action="store_true", help="Show the plan without writing files")
    args = parser.parse_args(argv)

    if args.rows <= 0 or args.payees <= 0:
        print("Error: --rows and --payees must be positive", file=sys.stderr)
        return 1
    if not 0 <= args.credit_ratio < 1:
        print("Error: --credit-ratio must be in [0, 1)", file=sys.stderr)
        return 1

    print("Dataset generation plan:")
    print(f"  Output file: {args.output}")
    print(f"  Rows: {args.rows:,}  Payees: {args.payees:,}  Credit ratio: {args.credit_ratio}")
    print(f"  Random seed: {args.seed}")
    if args.dry_run:
        print("\n[DRY RUN] Would generate files but not creating them.")
        return 0

    try:
        payees = generate_payees(args.payees, args.seed)
        write_table(generate_payments(args.rows, payees, args.seed, args.credit_ratio), args.output)
        print(f"Created payment file: {args.output}")
        if args.vendors is not None:
            write_table(payees[["Code", "Name", "ABN"]], args.vendors)
            print(f"Created vendor master: {args.vendors}")
        if args.classification is not None:
            write_table(classification_results(payees), args.classification)
            print(f"Created classification results: {args.classification}")
    except (OSError, ValueError) as e:
        print(f"\nError generating dataset: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
