from __future__ import annotations

import csv
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
OUT_PATH = ROOT / "docs" / "pending_fine_report.csv"
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy import func, select  # noqa: E402

from deptportal.database import SessionLocal  # noqa: E402
from deptportal.models import Fine, Student  # noqa: E402


def main() -> None:
    out_path = Path(sys.argv[1]) if len(sys.argv) > 1 else OUT_PATH
    with SessionLocal() as db:
        pending = dict(
            db.execute(
                select(Fine.student_id, func.sum(Fine.amount)).where(Fine.payment_status == "pending").group_by(Fine.student_id)
            ).all()
        )
        students = db.scalars(select(Student).order_by(Student.class_year, Student.register_number)).all()
        export_rows = []
        for s in students:
            computed = float(pending.get(s.id) or 0.0)
            cached = float(s.total_fine_amount or 0.0)
            export_rows.append(
                {
                    "register_number": s.register_number,
                    "name": s.name,
                    "class_year": s.class_year,
                    "pending_total": computed,
                    "cached_total": cached,
                    "consistent": abs(computed - cached) < 0.005,
                }
            )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(export_rows[0].keys()) if export_rows else [])
        writer.writeheader()
        writer.writerows(export_rows)
    print(
        {
            "rows": len(export_rows),
            "inconsistent": sum(1 for r in export_rows if not r["consistent"]),
            "path": str(out_path),
        }
    )


if __name__ == "__main__":
    main()
