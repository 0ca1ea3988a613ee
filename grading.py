"""Grade resolution and leaderboard queries over stored exam results."""
from functools import cmp_to_key
import math

from models import db, Exam, ExamResult, GradeBoundary, User

FALLBACK_GRADES = [
    (90, 'A+'),
    (80, 'A'),
    (75, 'B+'),
    (70, 'B'),
    (60, 'C'),
    (50, 'D'),
]


def clamp_percentage(percentage):
    if percentage is None or not math.isfinite(percentage):
        return 0.0
    return max(0.0, min(100.0, float(percentage)))


def resolve_grade(percentage, boundaries=()):
    """Return the grade letter for a percentage.

    ``boundaries`` are GradeBoundary rows already ordered by preference
    (college specific first); the first one containing the percentage wins.
    """
    pct = clamp_percentage(percentage)
    for b in boundaries:
        if b.min_percentage <= pct <= b.max_percentage:
            return b.grade
    for minimum, grade in FALLBACK_GRADES:
        if pct >= minimum:
            return grade
    return 'F'


def boundaries_for_college(college_id):
    college_rows = []
    if college_id is not None:
        college_rows = GradeBoundary.query.filter_by(college_id=college_id) \
            .order_by(GradeBoundary.min_percentage.desc()).all()
    defaults = GradeBoundary.query.filter_by(is_default=True, college_id=None) \
        .order_by(GradeBoundary.min_percentage.desc()).all()
    return college_rows + defaults


def grade_for(percentage, college_id=None):
    return resolve_grade(percentage, boundaries_for_college(college_id))


def compare_ranked(a, b):
    # marks obtained, then recent performance, completion time and roll number
    if a['score'] != b['score']:
        return -1 if a['score'] > b['score'] else 1
    ar = a.get('recent_performance') or 0
    br = b.get('recent_performance') or 0
    if ar != br:
        return -1 if ar > br else 1
    at = a.get('completion_time')
    bt = b.get('completion_time')
    if at is None and bt is not None:
        return 1
    if bt is None and at is not None:
        return -1
    if at is not None and bt is not None and at != bt:
        return -1 if at < bt else 1
    arn = a.get('roll_no')
    brn = b.get('roll_no')
    if arn is None and brn is not None:
        return 1
    if brn is None and arn is not None:
        return -1
    if arn != brn:
        return -1 if arn < brn else 1
    return 0


def rank_entries(entries):
    ordered = sorted(entries, key=cmp_to_key(compare_ranked))
    for idx, entry in enumerate(ordered):
        entry['rank'] = idx + 1
    return ordered


def rank_position(entries, user_id):
    for entry in entries:
        if entry['user_id'] == user_id:
            return {'rank': entry['rank'], 'of': len(entries)}
    return None


def _roll_numbers(user_ids):
    if not user_ids:
        return {}
    rows = db.session.query(User.id, User.roll_no).filter(User.id.in_(user_ids)).all()
    return {uid: roll for uid, roll in rows}


def exam_ranking(exam_id):
    results = ExamResult.query.filter_by(exam_id=exam_id, is_completed=True).all()
    rolls = _roll_numbers([r.user_id for r in results])
    entries = []
    for r in results:
        completion = None
        if r.start_time and r.end_time:
            completion = (r.end_time - r.start_time).total_seconds()
        entries.append({
            'user_id': r.user_id,
            'score': r.score,
            'total_marks': r.total_marks,
            'percentage': r.percentage,
            'grade': r.grade,
            # for a single exam the recent performance is this exam
            'recent_performance': r.percentage,
            'completion_time': completion,
            'roll_no': rolls.get(r.user_id),
        })
    return rank_entries(entries)


def cumulative_ranking(subject_id=None, user_ids=None):
    query = ExamResult.query.filter(ExamResult.is_completed.is_(True))
    if subject_id is not None:
        query = query.join(Exam, Exam.id == ExamResult.exam_id).filter(Exam.subject_id == subject_id)
    if user_ids is not None:
        if not user_ids:
            return []
        query = query.filter(ExamResult.user_id.in_(user_ids))

    totals = {}
    for r in query.all():
        acc = totals.setdefault(r.user_id, {'score': 0.0, 'total': 0.0, 'pct': 0.0, 'count': 0,
                                            'latest': None, 'recent': 0.0})
        acc['score'] += r.score
        acc['total'] += r.total_marks
        acc['pct'] += r.percentage
        acc['count'] += 1
        if r.end_time and (acc['latest'] is None or r.end_time > acc['latest']):
            acc['latest'] = r.end_time
            acc['recent'] = r.percentage

    rolls = _roll_numbers(list(totals))
    entries = []
    for user_id, acc in totals.items():
        entries.append({
            'user_id': user_id,
            'score': acc['score'],
            'total_marks': acc['total'],
            'percentage': acc['pct'] / acc['count'] if acc['count'] else 0.0,
            'exams_taken': acc['count'],
            'recent_performance': acc['recent'],
            'completion_time': None,
            'roll_no': rolls.get(user_id),
        })
    return rank_entries(entries)


def subject_ranking(subject_id, user_ids=None):
    return cumulative_ranking(subject_id=subject_id, user_ids=user_ids)


def class_ranking(class_id):
    members = db.session.query(User.id).filter_by(class_id=class_id, role='student').all()
    return cumulative_ranking(user_ids=[m.id for m in members])
