"""Exam attempt lifecycle: start, save, submit, auto-submit, terminate and manual marking.

An attempt is created once per (student, exam) and finalized exactly once,
either by the student, by the deadline sweep or by staff termination. Only
manual marking may change a finalized attempt afterwards.
"""
from datetime import datetime, timedelta
import json
import logging

from sqlalchemy.exc import IntegrityError

from models import db, ExamAttempt, ExamResult, Question
from grading import grade_for

logger = logging.getLogger(__name__)


class AttemptError(Exception):
    def __init__(self, message, status_code=400):
        super(AttemptError, self).__init__(message)
        self.message = message
        self.status_code = status_code


def make_record(event, data=None, ip=None, ua=None, source='browser', now=None):
    return {
        'ts': (now or datetime.now()).isoformat(),
        'event': event,
        'data': data or {},
        'ip': ip,
        'ua': ua,
        'source': source,
    }


def is_expired(attempt, now=None):
    now = now or datetime.now()
    return attempt.deadline is not None and now > attempt.deadline


def start_attempt(user, exam, ip=None, user_agent=None, now=None):
    """Start or resume the user's attempt; returns (attempt, created)."""
    now = now or datetime.now()
    if user.role != 'student':
        raise AttemptError('Student access required', 403)
    if user.college_id != exam.college_id:
        raise AttemptError('Not authorized', 403)
    if not exam.is_published or not exam.is_active:
        raise AttemptError('Exam is not available', 400)
    if now < exam.start_time:
        raise AttemptError('Exam has not started yet', 400)
    if now > exam.end_time:
        raise AttemptError('Exam has ended', 400)
    if exam.class_id and user.class_id != exam.class_id:
        raise AttemptError('You are not enrolled in this exam', 403)

    existing = ExamAttempt.query.filter_by(exam_id=exam.id, user_id=user.id).first()
    if existing:
        finalize_if_expired(existing, now=now)
        if existing.is_completed:
            raise AttemptError('You have already completed this exam', 409)
        return existing, False

    attempt = ExamAttempt(exam_id=exam.id, user_id=user.id, started_at=now,
                          deadline=min(now + timedelta(minutes=int(exam.duration_minutes)), exam.end_time),
                          ip_address=ip, user_agent=(user_agent or '')[:300] or None)
    attempt.append_record(make_record('attempt_started', ip=ip, ua=user_agent, source='system', now=now))
    db.session.add(attempt)
    try:
        db.session.commit()
    except IntegrityError:
        # a concurrent start for the same (user, exam) won
        db.session.rollback()
        attempt = ExamAttempt.query.filter_by(exam_id=exam.id, user_id=user.id).first()
        return attempt, False
    logger.info('User %s started attempt %s for exam %s', user.id, attempt.id, exam.id)
    return attempt, True


def _update_if_open(attempt, values):
    """Write values only while the attempt is still open in the database.

    Returns False, with the attempt refreshed, when another session finalized it first.
    """
    updated = ExamAttempt.query.filter_by(id=attempt.id, is_completed=False) \
        .update(values, synchronize_session=False)
    if updated:
        return True
    db.session.rollback()
    db.session.refresh(attempt)
    logger.info('Attempt %s was already finalized elsewhere', attempt.id)
    return False


def _ensure_open(attempt, now=None):
    if finalize_if_expired(attempt, now=now):
        raise AttemptError('Time is up; the attempt was submitted automatically', 409)
    if attempt.is_completed:
        raise AttemptError('This attempt has already been submitted', 409)


def save_answers(attempt, answers, now=None):
    _ensure_open(attempt, now=now)
    if not isinstance(answers, dict):
        raise AttemptError('answers must be an object', 400)
    valid = set(str(q.id) for q in Question.query.filter_by(exam_id=attempt.exam_id).all())
    merged = attempt.answers_dict()
    for key, value in answers.items():
        if str(key) in valid:
            merged[str(key)] = value
    if not _update_if_open(attempt, {'answers': json.dumps(merged)}):
        raise AttemptError('This attempt has already been submitted', 409)
    attempt.answers = json.dumps(merged)
    db.session.commit()
    return merged


def record_violation(attempt, alert):
    """Count a stored CheatingAlert against the attempt; returns True if it terminated the attempt."""
    attempt.violation_count = (attempt.violation_count or 0) + 1
    attempt.suspicious_activity = True
    attempt.append_record(make_record('cheating_alert', {
        'alert_id': alert.id,
        'alert_type': alert.alert_type,
        'severity': alert.severity,
    }, source='system'))
    db.session.commit()

    limit = attempt.exam.max_violations or 0
    if limit and not attempt.is_completed and attempt.violation_count >= limit:
        terminate_attempt(attempt, reason='Violation limit reached (%d)' % limit)
        return True
    return False


def grade_attempt(attempt):
    """Score stored answers against the answer keys without persisting anything."""
    answers = attempt.answers_dict()
    questions = Question.query.filter_by(exam_id=attempt.exam_id).all()
    question_total = sum(q.marks or 0 for q in questions)
    total = attempt.exam.total_marks if attempt.exam.total_marks and attempt.exam.total_marks > 0 else question_total

    breakdown = {}
    score = 0.0
    for q in questions:
        ans = answers.get(str(q.id))
        if not q.is_objective():
            breakdown[str(q.id)] = {'awarded': 0, 'correct': None, 'needs_review': ans is not None}
            continue
        correct = ans is not None and q.correct_answer is not None and \
            str(ans).strip().lower() == str(q.correct_answer).strip().lower()
        awarded = (q.marks or 0) if correct else 0
        score += awarded
        breakdown[str(q.id)] = {'awarded': awarded, 'correct': correct}

    score = max(0.0, min(float(total), score))
    percentage = (score / total * 100.0) if total > 0 else 0.0
    return {
        'score': score,
        'total_marks': float(total),
        'percentage': percentage,
        'grade': grade_for(percentage, attempt.exam.college_id),
        'breakdown': breakdown,
    }


def upsert_result(attempt, score, total, percentage, grade):
    result = ExamResult.query.filter_by(user_id=attempt.user_id, exam_id=attempt.exam_id).first()
    if result is None:
        result = ExamResult(user_id=attempt.user_id, exam_id=attempt.exam_id)
        db.session.add(result)
    result.score = score
    result.total_marks = total
    result.percentage = percentage
    result.grade = grade
    result.start_time = attempt.started_at
    result.end_time = attempt.ended_at
    result.is_completed = True
    return result


def _finalize(attempt, status, ended_at):
    if not _update_if_open(attempt, {'is_completed': True}):
        return None
    graded = grade_attempt(attempt)
    attempt.status = status
    attempt.ended_at = ended_at
    attempt.is_completed = True
    attempt.score = graded['score']
    attempt.total_marks = graded['total_marks']
    attempt.marks_breakdown = json.dumps(graded['breakdown'])
    result = upsert_result(attempt, graded['score'], graded['total_marks'], graded['percentage'], graded['grade'])
    db.session.commit()
    logger.info('Attempt %s finalized as %s with score %.2f/%.2f', attempt.id, status,
                graded['score'], graded['total_marks'])
    return result


def submit_attempt(attempt, answers=None, now=None):
    now = now or datetime.now()
    if attempt.is_completed:
        raise AttemptError('This attempt has already been submitted', 409)
    if is_expired(attempt, now):
        # answers arriving after the deadline are ignored
        result = _finalize(attempt, 'auto_submitted', attempt.deadline)
    else:
        if answers:
            save_answers(attempt, answers, now=now)
        result = _finalize(attempt, 'submitted', now)
    if result is None:
        raise AttemptError('This attempt has already been submitted', 409)
    return result


def finalize_if_expired(attempt, now=None):
    if attempt.is_completed or not is_expired(attempt, now):
        return None
    return _finalize(attempt, 'auto_submitted', attempt.deadline)


def finalize_expired_attempts(now=None):
    now = now or datetime.now()
    expired = ExamAttempt.query.filter(ExamAttempt.is_completed.is_(False),
                                       ExamAttempt.deadline.isnot(None),
                                       ExamAttempt.deadline < now).all()
    finalized = []
    for attempt in expired:
        if finalize_if_expired(attempt, now=now):
            finalized.append(attempt)
    return finalized


def terminate_attempt(attempt, by_user=None, reason='Suspicious activity detected', now=None):
    now = now or datetime.now()
    if attempt.is_completed or not _update_if_open(attempt, {'is_completed': True}):
        raise AttemptError('Attempt is already finished', 409)
    graded = grade_attempt(attempt)
    attempt.status = 'terminated'
    attempt.ended_at = now
    attempt.is_completed = True
    attempt.score = 0.0
    attempt.total_marks = graded['total_marks']
    attempt.append_record(make_record('exam_terminated', {
        'terminated_by': by_user.username if by_user else 'system',
        'terminated_by_role': by_user.role if by_user else 'system',
        'reason': reason,
    }, source='system', now=now))
    upsert_result(attempt, 0.0, graded['total_marks'], 0.0, grade_for(0.0, attempt.exam.college_id))
    db.session.commit()
    logger.info('Attempt %s terminated: %s', attempt.id, reason)
    return attempt


def mark_attempt(attempt, score=None, question_marks=None):
    """Manual marking of a finalized attempt, either per question or as a total score."""
    if not attempt.is_completed:
        raise AttemptError('Attempt is still in progress', 409)
    total = attempt.total_marks or grade_attempt(attempt)['total_marks']

    if question_marks:
        questions = dict((str(q.id), q) for q in Question.query.filter_by(exam_id=attempt.exam_id).all())
        breakdown = attempt.breakdown()
        for qid, awarded in question_marks.items():
            q = questions.get(str(qid))
            if q is None:
                raise AttemptError('Unknown question %s' % qid, 400)
            try:
                awarded = float(awarded)
            except (TypeError, ValueError):
                raise AttemptError('Invalid marks for question %s' % qid, 400)
            entry = breakdown.get(str(qid), {})
            entry['awarded'] = max(0.0, min(float(q.marks or 0), awarded))
            entry['needs_review'] = False
            breakdown[str(qid)] = entry
        attempt.marks_breakdown = json.dumps(breakdown)
        score = sum(entry.get('awarded') or 0 for entry in breakdown.values())
    elif score is None:
        raise AttemptError('score or question_marks required', 400)

    try:
        score = float(score)
    except (TypeError, ValueError):
        raise AttemptError('Invalid score value', 400)
    score = max(0.0, min(float(total), score))
    percentage = (score / total * 100.0) if total > 0 else 0.0
    attempt.score = score
    attempt.total_marks = total
    result = upsert_result(attempt, score, total, percentage, grade_for(percentage, attempt.exam.college_id))
    db.session.commit()
    return result
