import argparse
import asyncio
import csv
import json
import shutil

import yaml

from config import YamlConfig
from db import Database, SessionRepository, TemplateRepository
from errors import ValidationError
from settings_schema import SettingsSchema
from stats_service import StatisticsService, WeekPolicy

EXPORT_FIELDS = [
    "id",
    "template_id",
    "name",
    "started_at",
    "ended_at",
    "reps_by_set",
    "total_reps",
    "is_achieved",
]


async def seed_templates(db_path: str) -> str:
    async with Database(db_path) as db:
        return await TemplateRepository(db).ensure_default_template()


async def list_templates(db_path: str) -> list:
    async with Database(db_path) as db:
        return await TemplateRepository(db).list()


async def list_sessions(db_path: str, limit: int | None = None) -> list:
    async with Database(db_path) as db:
        return await SessionRepository(db).list_all(limit)


def _export_row(session) -> dict:
    return {
        "id": session.id,
        "template_id": session.template_id,
        "name": session.template_snapshot.name,
        "started_at": session.started_at.isoformat(),
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
        "reps_by_set": session.reps_by_set,
        "total_reps": session.total_reps,
        "is_achieved": session.is_achieved,
    }


def export_sessions(db_path: str, fmt: str, out_path: str) -> int:
    """Write every session to ``out_path`` as CSV or JSON; return the count."""
    sessions = asyncio.run(list_sessions(db_path))
    rows = [_export_row(s) for s in sessions]
    with open(out_path, "w", encoding="utf-8", newline="") as f:
        if fmt == "json":
            json.dump(rows, f, ensure_ascii=False, indent=2)
        else:
            writer = csv.DictWriter(f, fieldnames=EXPORT_FIELDS)
            writer.writeheader()
            for row in rows:
                writer.writerow(
                    {**row, "reps_by_set": "|".join(str(r) for r in row["reps_by_set"])}
                )
    return len(rows)


def backup_db(db_path: str, backup_path: str) -> None:
    shutil.copy(db_path, backup_path)


def restore_db(backup_path: str, db_path: str) -> None:
    shutil.copy(backup_path, db_path)


def weekly_report(db_path: str, weeks: int, week_start: str, timezone: str) -> list:
    sessions = asyncio.run(list_sessions(db_path))
    stats = StatisticsService(WeekPolicy(week_start, timezone))
    return stats.weekly_summary(sessions, weeks)


def update_config(yaml_path: str, pairs: list) -> SettingsSchema:
    """Apply ``key=value`` pairs to the settings file; an empty value resets."""
    changes = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"expected key=value, got {pair!r}")
        changes[key.strip()] = yaml.safe_load(value) if value else None
    config = YamlConfig(yaml_path)
    return config.update(**changes) if changes else config.load()


def main() -> None:
    parser = argparse.ArgumentParser(description="Utility commands")
    sub = parser.add_subparsers(dest="cmd", required=True)

    seed = sub.add_parser("seed")
    seed.add_argument("--db", default="pullup.db")

    tpl = sub.add_parser("templates")
    tpl.add_argument("--db", default="pullup.db")

    ses = sub.add_parser("sessions")
    ses.add_argument("--db", default="pullup.db")
    ses.add_argument("--limit", type=int, default=10)

    stats = sub.add_parser("stats")
    stats.add_argument("--db", default="pullup.db")
    stats.add_argument("--weeks", type=int, default=4)
    stats.add_argument("--week-start", default="monday")
    stats.add_argument("--timezone", default="UTC")

    exp = sub.add_parser("export")
    exp.add_argument("--db", default="pullup.db")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default="sessions.csv")

    bkp = sub.add_parser("backup")
    bkp.add_argument("--db", default="pullup.db")
    bkp.add_argument("--out", default="backup.db")

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", default="backup.db")
    rst.add_argument("--db", default="pullup.db")

    cfg = sub.add_parser("config")
    cfg.add_argument("--settings", default="settings.yaml")
    cfg.add_argument("--set", dest="pairs", action="append", default=[])

    args = parser.parse_args()

    if args.cmd == "seed":
        first = asyncio.run(seed_templates(args.db))
        print(f"Default templates ready, first preset: {first}")
    elif args.cmd == "templates":
        for t in asyncio.run(list_templates(args.db)):
            print(f"{t.id}\t{t.name}\t{t.sets} sets\t{t.target_total} reps\t{t.rest_sec}s")
    elif args.cmd == "sessions":
        for s in asyncio.run(list_sessions(args.db, args.limit)):
            reps = ",".join(str(r) for r in s.reps_by_set)
            mark = "*" if s.is_achieved else " "
            print(f"{s.started_at:%Y-%m-%d %H:%M} {mark} {s.template_snapshot.name}: {reps} = {s.total_reps}")
    elif args.cmd == "stats":
        for week in weekly_report(args.db, args.weeks, args.week_start, args.timezone):
            print(
                f"{week['label']}: {week['session_count']} sessions, "
                f"{week['total_reps']} reps, {week['achieved_count']} achieved"
            )
    elif args.cmd == "export":
        count = export_sessions(args.db, args.fmt, args.out)
        print(f"Exported {count} sessions to {args.out}")
    elif args.cmd == "backup":
        backup_db(args.db, args.out)
    elif args.cmd == "restore":
        restore_db(args.src, args.db)
    elif args.cmd == "config":
        settings = update_config(args.settings, args.pairs)
        print(yaml.safe_dump(settings.model_dump(exclude={"api_token"}), sort_keys=True))


if __name__ == "__main__":
    main()
