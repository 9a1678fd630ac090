#!/usr/bin/env python3
"""
Install the starter validation rule set for a user.
"""

import argparse
import sys
from pathlib import Path

# Add the project root to sys.path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from actionengine.core.dao import SQLiteActionRepository
from actionengine.core.validation import default_rules


def main():
    parser = argparse.ArgumentParser(
        description="Seed default validation rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s owner-1                  # Install rules for owner-1
  %(prog)s owner-1 --dry-run        # Show what would be installed
  %(prog)s owner-1 --db ./data/actions.db
        """
    )
    parser.add_argument("user_id", help="User the rules apply to")
    parser.add_argument("--db", default=None, help="SQLite database path (default: DB_PATH)")
    parser.add_argument("--created-by", default="seed_rules", help="Recorded as the rule author")
    parser.add_argument("--dry-run", action="store_true", help="List the rules without writing them")
    args = parser.parse_args()

    rules = default_rules(args.user_id, created_by=args.created_by)

    if args.dry_run:
        for rule in rules:
            print(f"{rule.action_type:16} {rule.rule_type:20} priority={rule.priority} {rule.rule_config}")
        return

    repository = SQLiteActionRepository(args.db)
    existing = set()
    for action_type in {rule.action_type for rule in rules}:
        existing.update((r.action_type, r.rule_type)
                        for r in repository.list_rules(args.user_id, action_type, enabled_only=False))

    installed = 0
    for rule in rules:
        if (rule.action_type, rule.rule_type) in existing:
            continue
        repository.add_rule(rule)
        installed += 1

    print(f"Installed {installed} rule(s) for {args.user_id} ({len(rules) - installed} already present)")


if __name__ == "__main__":
    main()
