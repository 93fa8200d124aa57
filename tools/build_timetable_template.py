import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
OUT_DIR = ROOT / "docs" / "timetable-templates"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from sqlalchemy import or_, select  # noqa: E402

from educonnect.excel_template import build_timetable_template, template_filename  # noqa: E402
from educonnect.models import AcademicTerm, SessionLocal  # noqa: E402


def parse_args():
    p = argparse.ArgumentParser(description="Write the timetable import workbook for one academic term.")
    p.add_argument("--term", required=True, help="AcademicTerm id or name, e.g. 'Học kỳ 1'")
    p.add_argument("--week", type=int, default=1, help="Week number shown on each class sheet")
    p.add_argument("--class-type", choices=("all", "base", "combined"), default="all")
    p.add_argument("--class-id", help="Only include this class")
    p.add_argument("--out", help=f"Output .xlsx path (default: {OUT_DIR}/<generated name>)")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    with SessionLocal() as db:
        terms = db.scalars(select(AcademicTerm).where(or_(AcademicTerm.id == args.term, AcademicTerm.name == args.term))).all()
        if not terms:
            raise SystemExit(f"Academic term not found: {args.term}")
        if len(terms) > 1:
            raise SystemExit(f"Term name '{args.term}' is ambiguous; pass the id instead: {', '.join(t.id for t in terms)}")
        term = terms[0]
        content = build_timetable_template(db, term, week_number=args.week, class_type=args.class_type, class_id=args.class_id)

    out = Path(args.out) if args.out else OUT_DIR / template_filename(term, args.week)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(content)
    print(f"Wrote {out} ({len(content)} bytes)")


if __name__ == "__main__":
    main()
