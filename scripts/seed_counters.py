#!/usr/bin/env python3
"""
Repair: raise document counters to the highest bill / receipt / expense
number already stored, so the next number issued never repeats one.
Counters are only ever raised.

Run: python scripts/seed_counters.py --db pos.db
"""
import argparse

import pos_service as ps

ap = argparse.ArgumentParser()
ap.add_argument("--db", default=ps.DB_PATH)
ap.add_argument("--schema", default=ps.SCHEMA_PATH)
args = ap.parse_args()

conn = ps.connect(args.db)
ps.ensure_schema(conn, args.schema)

report = ps.run_integrity_audit(conn)
for issue in report["counter_issues"]:
    print(f"Counter {issue['key']} at {issue['counter']}, highest issued {issue['issued']}")

if report["counter_issues"]:
    raised = ps.seed_counters_from_documents(conn)
    print(f"✓ Raised {raised} counter(s)")
else:
    print("Counters already cover every stored document")

conn.close()
