from flask import current_app
from flask_mail import Mail, Message
from threading import Thread
import json
import logging

from models import db, Exam, Notification, User

logger = logging.getLogger(__name__)

mail = Mail()

SEVERITY_PRIORITY = {'low': 'low', 'medium': 'medium', 'high': 'high', 'critical': 'urgent'}


def exam_recipients(exam):
    """Staff who should hear about an exam: its creator plus the college's admins and teachers."""
    staff = User.query.filter(
        User.college_id == exam.college_id,
        User.role.in_(('college_admin', 'teacher')),
        User.is_active_account.is_(True),
    ).all()
    recipients = {u.id: u for u in staff}
    if exam.creator_id and exam.creator_id not in recipients:
        creator = db.session.get(User, exam.creator_id)
        if creator:
            recipients[creator.id] = creator
    return list(recipients.values())


def _send_async_email(app, msg):
    with app.app_context():
        try:
            mail.send(msg)
        except Exception:
            logger.exception('Failed to send notification email')


def send_email(subject, recipients, body):
    app = current_app._get_current_object()
    if not app.config.get('NOTIFY_EMAIL_ENABLED'):
        return None
    recipients = [r for r in recipients if r]
    if not recipients:
        return None
    msg = Message(subject, recipients=recipients, body=body)
    thread = Thread(target=_send_async_email, args=(app, msg), daemon=True)
    thread.start()
    return thread


def notify_cheating_alert(alert):
    """Persist one notification per staff recipient and email them when enabled.

    ``alert`` is a stored CheatingAlert row.
    """
    exam = db.session.get(Exam, alert.exam_id)
    student = db.session.get(User, alert.user_id)
    if not exam or not student:
        logger.error('Could not find exam or student for cheating alert %s', alert.id)
        return []

    title = 'Cheating Alert - %s' % exam.title
    message = 'Suspicious activity detected for %s (Roll: %s) in exam "%s". Pattern: %s. Severity: %s' % (
        student.username, student.roll_no or 'N/A', exam.title, alert.alert_type, alert.severity.upper())
    payload = json.dumps({
        'alert_id': alert.id,
        'student_id': student.id,
        'student_name': student.username,
        'alert_type': alert.alert_type,
        'severity': alert.severity,
        'timestamp': alert.created_at.isoformat(),
    })

    created = []
    recipients = exam_recipients(exam)
    for user in recipients:
        n = Notification(user_id=user.id, college_id=exam.college_id, exam_id=exam.id, title=title,
                         message=message, type='error', priority=SEVERITY_PRIORITY.get(alert.severity, 'medium'),
                         data=payload)
        db.session.add(n)
        created.append(n)
    db.session.commit()
    logger.info('Sent cheating alert notifications to %d recipients', len(recipients))

    send_email(title, [u.email for u in recipients], message)
    return created


def notify_attempt_finalized(attempt, reason='submitted', detail=None):
    exam = attempt.exam
    if reason == 'terminated':
        title = 'Exam Terminated'
        message = 'Your attempt at "%s" was terminated. Reason: %s' % (exam.title, detail or 'terminated by exam staff')
        kind = 'warning'
    elif reason == 'auto_submitted':
        title = 'Exam Auto-Submitted'
        message = 'Time ran out for "%s"; your saved answers were submitted automatically.' % exam.title
        kind = 'info'
    else:
        title = 'Exam Completed'
        message = 'You have successfully completed the exam: %s' % exam.title
        kind = 'info'
    n = Notification(user_id=attempt.user_id, college_id=exam.college_id, exam_id=exam.id, title=title,
                     message=message, type=kind, priority='medium',
                     data=json.dumps({'attempt_id': attempt.id, 'reason': reason, 'detail': detail}))
    db.session.add(n)
    db.session.commit()
    return n
