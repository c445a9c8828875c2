from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from deptportal.database import SessionLocal, engine  # noqa: E402
from deptportal.holidays import import_holidays_csv  # noqa: E402
from deptportal.models import Base  # noqa: E402


def main() -> None:
    if len(sys.argv) < 2:
        raise SystemExit("usage: import_holidays_csv.py <holidays.csv>")
    input_csv = Path(sys.argv[1])
    if not input_csv.exists():
        raise SystemExit(f"Missing input CSV: {input_csv}")

    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        summary = import_holidays_csv(db, input_csv.read_text(encoding="utf-8-sig"))
    print(summary)


if __name__ == "__main__":
    main()
