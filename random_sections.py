#!/usr/bin/env python3
"""
Canvas Random Section Enrollment

Spreads the students of a Canvas course across a set of named sections
("ad hoc" sections) at random while keeping the sections evenly sized, and
keeps them in sync as the roster changes:

• Missing sections are created, existing ones are reused by exact name
• Students not yet in any of the sections are shuffled and placed, always
  filling the emptiest section first, then round-robin once sizes are even
• Students who dropped the course (their only remaining enrollment is in
  one of the sections) are removed from it

Setup:
1. Create .env file with CANVAS_BASE_URL and CANVAS_API_TOKEN
2. pip install -e .
3. random-sections --course_id 1234 --sections "Group A" "Group B"
"""

import json
import random
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence, Tuple, MutableSequence

from canvas_api import (
    CanvasConfig, CanvasAPIClient, EnvTokenProvider, Member, Section, Enrollment, get_config,
    get_course, get_section, list_students, list_sections, create_section, create_enrollment,
    delete_enrollment, log_audit_action
)

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Assignment engine

def shuffle(items: MutableSequence, rng: Optional[random.Random] = None) -> MutableSequence:
    """Fisher-Yates shuffle in place; returns the same sequence."""
    rng = rng or random.Random()
    for i in range(len(items) - 1, 0, -1):
        j = rng.randint(0, i)
        items[i], items[j] = items[j], items[i]
    return items


def index_of_smallest(values: Sequence[int]) -> Optional[int]:
    """Leftmost index of the lowest value, or None if all values are equal."""
    if all(v == values[0] for v in values):
        return None

    lowest = 0
    for i in range(1, len(values)):
        if values[i] < values[lowest]:
            lowest = i
    return lowest


def plan_assignments(member_count: int, occupancies: Sequence[int]) -> List[Tuple[int, int]]:
    """Plan (member index, section index) pairs for members in input order.

    Each member goes to the section with the fewest students. When all sections
    are even the i-th member goes to section i % len(occupancies), so fresh
    sections fill 0, 1, 2, ... The counts are updated after every placement.
    """
    if not occupancies:
        return []

    totals = list(occupancies)
    plan = []
    for i in range(member_count):
        target = index_of_smallest(totals)
        if target is None:
            target = i % len(totals)
        plan.append((i, target))
        totals[target] += 1
    return plan


# Work items

def parse_flag(value: Any) -> bool:
    """Read a JSON or query-string flag; "false", "0" and "" are False."""
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'on', 'yes')
    return value is True or value == 1


@dataclass
class WorkItem:
    """One course to balance: {courseId, sectionNames[], sectionId?, dryRun?}."""
    course_id: Optional[int]
    section_names: List[str]
    source_section_id: Optional[int] = None
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], dry_run: bool = False) -> 'WorkItem':
        if not isinstance(data, dict):
            raise ValueError(f"Work item must be an object, got {type(data).__name__}")

        course_id = data.get('courseId', data.get('course_id'))
        source_section_id = data.get('sectionId', data.get('sectionid'))
        names = data.get('sectionNames', data.get('sectionnames'))

        if course_id in (None, '') and source_section_id in (None, ''):
            raise ValueError("Work item needs a courseId or a sectionId")
        if isinstance(names, str):
            names = [names]
        if not names or not all(isinstance(n, str) and n.strip() for n in names):
            raise ValueError("Work item needs a non-empty list of sectionNames")

        try:
            course_id = int(course_id) if course_id not in (None, '') else None
            source_section_id = int(source_section_id) if source_section_id not in (None, '') else None
        except (TypeError, ValueError):
            raise ValueError(f"Invalid course or section id in work item: {data}")

        return cls(
            course_id=course_id,
            section_names=list(names),
            source_section_id=source_section_id,
            dry_run=dry_run or parse_flag(data.get('dryRun', False))
        )


def parse_batch(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return the raw work items of a {"data": [...]} batch payload."""
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), list):
        raise ValueError('Batch payload must be an object with a "data" list')
    return payload['data']


# Reconciliation

@dataclass
class RunResult:
    """Outcome of one reconciliation run for a course."""
    course_id: int
    course_name: str = ''
    sections_created: int = 0
    sections_failed: List[str] = field(default_factory=list)
    placements_planned: int = 0
    placements_made: int = 0
    removals_planned: int = 0
    removals_made: int = 0
    dry_run: bool = False

    def summary(self) -> str:
        prefix = "DRY RUN: " if self.dry_run else ""
        line = (f"{prefix}Course '{self.course_name}' ({self.course_id}): "
                f"placed {self.placements_made}/{self.placements_planned} students, "
                f"removed {self.removals_made}/{self.removals_planned} dropped enrollments")
        if self.sections_created:
            line += f", created {self.sections_created} section(s)"
        if self.sections_failed:
            line += f", FAILED to create {', '.join(self.sections_failed)}"
        return line + "."


def resolve_sections(client: CanvasAPIClient, course_id: int, names: Sequence[str],
                     existing: Sequence[Section], result: RunResult) -> List[Section]:
    """Match requested names against existing sections, creating the missing ones.

    A section that cannot be created is left out, so the run continues with
    the sections that remain.
    """
    resolved = []
    for name in dict.fromkeys(names):
        match = next((s for s in existing if s.name == name), None)
        if match:
            logger.info(f"Section '{name}' found ({match.id}) with {match.occupancy} students")
            resolved.append(match)
            continue

        logger.info(f"Section '{name}' was not found in course {course_id}")
        if result.dry_run:
            logger.info(f"DRY RUN: Would create section '{name}' in course {course_id}")
            log_audit_action(client.config, 'create_section', course_id, None, None, None,
                             'success', True, f"Would create section '{name}'")
            resolved.append(Section(id=0, name=name))
            continue

        created = create_section(client, course_id, name)
        if created:
            result.sections_created += 1
            resolved.append(created)
        else:
            logger.error(f"SECTION CREATE FAILED FOR '{name}' IN {course_id}, continuing without it")
            result.sections_failed.append(name)
    return resolved


def unplaced_members(roster: Sequence[Member], targets: Sequence[Section],
                     source_section_id: Optional[int] = None) -> List[Member]:
    """Roster members not yet listed in any target section."""
    target_ids = {s.id for s in targets}
    candidates = []
    for member in roster:
        if any(section.has_member(member.id) for section in targets):
            continue
        if any(e.section_id in target_ids for e in member.enrollments):
            continue
        if source_section_id is not None and not any(e.section_id == source_section_id for e in member.enrollments):
            continue
        candidates.append(member)
    return candidates


def withdrawal_candidates(roster: Sequence[Member], targets: Sequence[Section]) -> List[Enrollment]:
    """Enrollments of members whose only enrollment left is in a target section."""
    target_ids = {s.id for s in targets}
    stale = []
    for member in roster:
        if len(member.enrollments) == 1 and member.enrollments[0].section_id in target_ids:
            stale.append(member.enrollments[0])
    return stale


def reconcile_course(client: CanvasAPIClient, item: WorkItem, rng: Optional[random.Random] = None) -> str:
    """Run one full placement and drop reconciliation for a course.

    Returns a one-line status. Read failures return an error line without
    writing anything; individual write failures are logged and skipped.
    """
    course_id = item.course_id
    if course_id is None:
        source = get_section(client, item.source_section_id)
        if not source or not source.get('course_id'):
            return f"Error while retrieving section {item.source_section_id}. Check the logs."
        course_id = source['course_id']

    course = get_course(client, course_id)
    roster = list_students(client, course_id)
    existing = list_sections(client, course_id)
    if course is None or roster is None or existing is None:
        return f"Error while retrieving course, roster or section data for course {course_id}. Check the logs."

    result = RunResult(course_id=course.id, course_name=course.name, dry_run=item.dry_run)
    targets = resolve_sections(client, course.id, item.section_names, existing, result)

    # Placement
    to_place = unplaced_members(roster, targets, item.source_section_id)
    if not targets:
        logger.error(f"No usable sections for course {course.id}, skipping placement")
    elif to_place:
        shuffle(to_place, rng)
        plan = plan_assignments(len(to_place), [s.occupancy for s in targets])
        result.placements_planned = len(plan)
        for member_index, section_index in plan:
            member, section = to_place[member_index], targets[section_index]
            if item.dry_run:
                logger.info(f"DRY RUN: Would enroll {member.id} in {section.name}")
                log_audit_action(client.config, "enroll", course.id, section.id, member.id, None,
                                 "success", True, f"Would enroll user {member.id} in section '{section.name}'")
                section.occupancy += 1
                result.placements_made += 1
                continue
            if create_enrollment(client, section.id, member.id):
                section.occupancy += 1
                result.placements_made += 1
                logger.info(f"Enrolled {member.id} in {section.name} ({section.id})")
            else:
                logger.error(f"ENROLLMENT FAILED FOR {member.id} IN {section.id}, skipping")
    else:
        logger.info(f"No students in course {course.id} need placement")

    # Drops
    stale = withdrawal_candidates(roster, targets)
    result.removals_planned = len(stale)
    for enrollment in stale:
        if item.dry_run:
            logger.info(f"DRY RUN: Would remove user {enrollment.user_id} from section {enrollment.section_id}")
            log_audit_action(client.config, client.config.drop_task, course.id, enrollment.section_id,
                             enrollment.user_id, enrollment.id, "success", True,
                             f"Would remove user {enrollment.user_id} from section {enrollment.section_id}")
            result.removals_made += 1
            continue
        if delete_enrollment(client, course.id, enrollment):
            result.removals_made += 1
            logger.info(f"Removed dropped user {enrollment.user_id} from section {enrollment.section_id}")

    occupancy = ", ".join(f"{s.name}={s.occupancy}" for s in targets) or "none"
    logger.info(f"Section occupancy for course {course.id}: {occupancy}")
    return result.summary()


class RandomSectionService:
    """Runs work items against Canvas one course at a time."""

    def __init__(self, client: CanvasAPIClient, rng: Optional[random.Random] = None):
        self.client = client
        self.rng = rng

    def run(self, item: WorkItem) -> str:
        logger.info(f"Starting random section enrollment for course {item.course_id or '?'} "
                    f"(sections: {', '.join(item.section_names)})")
        return reconcile_course(self.client, item, self.rng)

    def run_batch(self, raw_items: Sequence[Dict[str, Any]], dry_run: bool = False) -> str:
        """Run every item in order; one status line per item."""
        lines = []
        for raw in raw_items:
            try:
                item = WorkItem.from_dict(raw, dry_run)
            except ValueError as e:
                logger.error(f"Skipping invalid work item {raw}: {e}")
                lines.append(f"Invalid work item: {e}")
                continue
            lines.append(self.run(item))
        return "\n".join(lines)


def build_client(config: Optional[CanvasConfig] = None) -> CanvasAPIClient:
    return CanvasAPIClient(EnvTokenProvider(), config or get_config())


def main():
    """Command-line entry point for single course or batch runs."""
    import argparse
    import sys

    parser = argparse.ArgumentParser(description='Canvas Random Section Enrollment')
    parser.add_argument('--course_id', type=int, help='Canvas course ID')
    parser.add_argument('--section_id', type=int, help='Only place students enrolled in this section')
    parser.add_argument('--sections', nargs='+', help='Names of the sections to balance students across')
    parser.add_argument('--batch_file', help='JSON file with {"data": [{"courseId": ..., "sectionNames": [...]}]}')
    parser.add_argument('--dry_run', action='store_true', help='Dry run mode - log actions without executing')
    parser.add_argument('--seed', type=int, help='Seed the shuffle for a reproducible placement')
    args = parser.parse_args()

    if not args.batch_file and not args.sections:
        parser.error('either --batch_file or --sections is required')

    try:
        service = RandomSectionService(build_client(), random.Random(args.seed))
    except ValueError as e:
        print(f"Configuration Error: {e}")
        sys.exit(1)

    if args.batch_file:
        try:
            with open(args.batch_file, 'r', encoding='utf-8') as f:
                raw_items = parse_batch(json.load(f))
        except (OSError, json.JSONDecodeError, ValueError) as e:
            print(f"Could not read batch file: {e}")
            sys.exit(1)
        print(service.run_batch(raw_items, dry_run=args.dry_run))
        return

    try:
        item = WorkItem.from_dict({'courseId': args.course_id, 'sectionId': args.section_id,
                                   'sectionNames': args.sections}, dry_run=args.dry_run)
    except ValueError as e:
        parser.error(str(e))
    print(service.run(item))


if __name__ == '__main__':
    main()
