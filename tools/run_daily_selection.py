from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT / "backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from sqlalchemy.exc import SQLAlchemyError  # noqa: E402

from deptportal.database import SessionLocal, engine  # noqa: E402
from deptportal.errors import PipelineError  # noqa: E402
from deptportal.models import Base  # noqa: E402
from deptportal.pipeline import run_pipeline  # noqa: E402
from deptportal.scheduling import parse_iso_date  # noqa: E402
from deptportal.settings import settings  # noqa: E402


def main() -> int:
    target = parse_iso_date(sys.argv[1]) if len(sys.argv) > 1 else None
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        try:
            report = run_pipeline(db, settings, target_date=target)
        except (SQLAlchemyError, PipelineError) as exc:
            print(json.dumps({"success": False, "error": str(exc)}))
            return 1
    print(json.dumps(report.as_dict(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
