"""CLI script to import flashcard files into a topic.
Usage: python scripts/import_flashcards.py --username NAME --topic TOPIC_ID FILE [FILE ...] [--dry-run]
"""
import sys
import argparse
import json
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `homeschool` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from homeschool.database import engine, create_db_and_tables
from homeschool import repositories, services


def main(username: str, topic_id: int, files: List[pathlib.Path], dry_run: bool = False,
         strategy: str = 'skip', check_duplicates: bool = True) -> int:
    """Import each file into `topic_id` for `username`.

    Duplicates are resolved with `strategy` for every file. Returns the
    process exit code.
    """
    create_db_and_tables()
    with Session(engine) as session:
        user = repositories.UserRepository(session).get_by_username(username)
        if user is None:
            print(f'User not found: {username}')
            return 1
        svc = services.ImportService(session)
        total_imported = 0
        total_failed = 0
        for f in files:
            if not f.exists():
                print(f'File not found: {f}')
                total_failed += 1
                continue
            try:
                result = svc.import_file(
                    user.id, topic_id, f.read_bytes(), f.name,
                    check_duplicates=check_duplicates,
                    merge_strategy={'global_action': strategy},
                    dry_run=dry_run,
                )
            except (ValueError, services.NotFoundError) as e:
                print(f'Error importing {f}: {e}')
                total_failed += 1
                continue
            if dry_run:
                print(f"Checked {f}: would import {result['would_import']}, update {result['would_update']}, "
                      f"skip {result['skipped']}, failed {result['failed']}")
            else:
                total_imported += result['imported']
                print(f"Imported {f}: {result['imported']} new, {result['updated']} updated, "
                      f"{result['skipped']} skipped, {result['failed']} failed ({result['status']})")
            total_failed += result['failed']
            for err in result['errors']:
                print(f'  {err}')
        print(json.dumps({'imported': total_imported, 'failed': total_failed, 'dry_run': dry_run}))
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('files', nargs='+', type=pathlib.Path, help='Flashcard files to import')
    parser.add_argument('--username', required=True, help='Owner of the topic')
    parser.add_argument('--topic', type=int, required=True, help='Target topic id')
    parser.add_argument('--strategy', default='skip', choices=['skip', 'update', 'replace', 'keep_both'],
                        help='How to resolve duplicates')
    parser.add_argument('--no-duplicate-check', action='store_true', help='Import without duplicate detection')
    parser.add_argument('--dry-run', action='store_true', help='Parse and check without writing')
    args = parser.parse_args()
    sys.exit(main(args.username, args.topic, args.files, dry_run=args.dry_run,
                  strategy=args.strategy, check_duplicates=not args.no_duplicate_check))
