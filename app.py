from flask import Flask, request, abort
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from flask_socketio import SocketIO, join_room, leave_room, emit, disconnect
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv
from datetime import datetime
from functools import wraps
import json
import logging
import os

from models import db, User, ClassGroup, Subject, Exam, Question, ExamAttempt, ExamResult, \
    CheatingAlert, Notification, STAFF_ROLES
from attempts import AttemptError, start_attempt, save_answers, submit_attempt, finalize_if_expired, \
    finalize_expired_attempts, record_violation, terminate_attempt, mark_attempt, make_record, is_expired
from grading import exam_ranking, subject_ranking, class_ranking, rank_position
from sessions import ExamSessionManager, ConnectionRegistry
from proctoring import CheatingDetector, normalize_activity, summarize_attempt_activity, SEVERITY_ORDER
from behavior import BehaviorAnalysisEngine
from notifications import mail, notify_cheating_alert, notify_attempt_finalized

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(BASE_DIR, 'app.db')

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'change-this-secret')  # change in production

# Allow overriding DB via DATABASE_URL (useful for MySQL/Postgres in production).
DATABASE_URL = os.environ.get('DATABASE_URL')
if DATABASE_URL:
    app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
else:
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + DB_PATH
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

app.config['MAIL_SERVER'] = os.environ.get('MAIL_SERVER', 'localhost')
app.config['MAIL_PORT'] = int(os.environ.get('MAIL_PORT', 25))
app.config['MAIL_USE_TLS'] = os.environ.get('MAIL_USE_TLS', 'false').lower() in ('1', 'true', 'yes')
app.config['MAIL_USERNAME'] = os.environ.get('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.environ.get('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = os.environ.get('MAIL_DEFAULT_SENDER', 'proctor@localhost')
app.config['NOTIFY_EMAIL_ENABLED'] = os.environ.get('NOTIFY_EMAIL_ENABLED', 'false').lower() in ('1', 'true', 'yes')

# Proctoring knobs
app.config['BEHAVIOR_ALERT_THRESHOLD'] = float(os.environ.get('BEHAVIOR_ALERT_THRESHOLD', 60))
app.config['SWEEP_INTERVAL_SECONDS'] = int(os.environ.get('SWEEP_INTERVAL_SECONDS', 30))
app.config['SESSION_IDLE_TIMEOUT_MINUTES'] = int(os.environ.get('SESSION_IDLE_TIMEOUT_MINUTES', 30))
app.config['CONNECTION_TIMEOUT_MINUTES'] = int(os.environ.get('CONNECTION_TIMEOUT_MINUTES', 5))

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

db.init_app(app)
mail.init_app(app)
login_manager = LoginManager(app)

socketio = SocketIO(app)

MONITOR_NS = '/exam-monitoring'
STUDENT_NS = '/student-exam'
TELEMETRY_ACTIONS = ('mouse_movement', 'keystroke', 'gaze')
QUESTION_TYPES = ('multiple_choice', 'true_false', 'short_answer', 'essay')

session_manager = ExamSessionManager()
connections = ConnectionRegistry()
detector = CheatingDetector()
behavior_engine = BehaviorAnalysisEngine()


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return {'status': 'error', 'message': 'Authentication required'}, 401


@app.errorhandler(AttemptError)
def handle_attempt_error(e):
    return {'status': 'error', 'message': e.message}, e.status_code


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return {'status': 'error', 'message': e.description}, e.code


def seed_super_admin():
    # Ensure exactly one admin seeded if no users exist
    if User.query.count() == 0:
        admin = User(username='admin', role='super_admin')
        admin.set_password(os.environ.get('ADMIN_PASSWORD', 'adminpass'))
        db.session.add(admin)
        db.session.commit()
        logger.info('Seeded super admin user: username=admin')


def init_app():
    with app.app_context():
        db.create_all()
        seed_super_admin()


def roles_required(*roles):
    def decorator(func):
        @wraps(func)
        def decorated_view(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if getattr(current_user, 'role', None) not in roles:
                return {'status': 'error', 'message': 'Not authorized'}, 403
            return func(*args, **kwargs)
        return decorated_view
    return decorator


staff_required = roles_required(*STAFF_ROLES)


def can_access_exam(user, exam):
    if user.is_super_admin():
        return True
    return user.college_id is not None and user.college_id == exam.college_id


def can_manage_exam(user, exam):
    if not can_access_exam(user, exam):
        return False
    if user.role in ('super_admin', 'college_admin'):
        return True
    return user.role == 'teacher' and exam.creator_id == user.id


def load_exam(exam_id, manage=False):
    exam = Exam.query.get_or_404(exam_id)
    allowed = can_manage_exam(current_user, exam) if manage else can_access_exam(current_user, exam)
    if not allowed:
        abort(403, description='Not authorized')
    return exam


def load_own_attempt(attempt_id):
    attempt = ExamAttempt.query.get_or_404(attempt_id)
    if attempt.user_id != current_user.id:
        abort(403, description='Not authorized')
    return attempt


def load_supervised_attempt(attempt_id, manage=False):
    attempt = ExamAttempt.query.get_or_404(attempt_id)
    exam = attempt.exam
    allowed = can_manage_exam(current_user, exam) if manage else can_access_exam(current_user, exam)
    if not current_user.is_staff() or not allowed:
        abort(403, description='Not authorized')
    return attempt


def parse_datetime(value, field):
    if not value:
        abort(400, description='%s is required' % field)
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        abort(400, description='%s must be an ISO-8601 datetime' % field)


def exam_room(exam_id):
    return f'exam_{exam_id}'


def attempt_room(attempt_id):
    return f'attempt_{attempt_id}'


def relay_to_monitors(event, payload, exam_id):
    try:
        socketio.emit(event, payload, room=exam_room(exam_id), namespace=MONITOR_NS)
    except Exception:
        logger.exception('Failed to emit %s to exam monitors', event)


def notify_student(event, payload, attempt_id):
    try:
        socketio.emit(event, payload, room=attempt_room(attempt_id), namespace=STUDENT_NS)
    except Exception:
        logger.exception('Failed to emit %s to attempt %s', event, attempt_id)


def exam_status(exam):
    now = datetime.now()
    live = session_manager.exam_summary(exam.id)
    return {
        'exam_id': exam.id,
        'title': exam.title,
        'total_students': ExamAttempt.query.filter_by(exam_id=exam.id).count(),
        'active_students': live['active'],
        'completed_students': ExamAttempt.query.filter_by(exam_id=exam.id, is_completed=True).count(),
        'disconnected_students': live['disconnected'],
        'suspended_students': live['suspended'],
        'average_progress': live['average_progress'],
        'alerts_count': CheatingAlert.query.filter_by(exam_id=exam.id).count(),
        'connected_users': connections.connected_count(exam.id),
        'start_time': exam.start_time.isoformat(),
        'end_time': exam.end_time.isoformat(),
        'time_remaining': max(0, int((exam.end_time - now).total_seconds())),
    }


def after_finalize(attempt, reason, detail=None):
    """Tear down live state for a finalized attempt and tell everyone who cares."""
    session_manager.complete_session(attempt.exam_id, attempt.user_id)
    behavior_engine.cleanup((attempt.exam_id, attempt.user_id))
    detector.forget(attempt.exam_id, attempt.user_id)
    payload = {
        'attempt_id': attempt.id,
        'exam_id': attempt.exam_id,
        'user_id': attempt.user_id,
        'status': attempt.status,
        'reason': reason,
        'timestamp': datetime.now().isoformat(),
    }
    relay_to_monitors('exam-submitted', payload, attempt.exam_id)
    if reason == 'auto_submitted':
        notify_student('attempt-finalized', payload, attempt.id)
    try:
        notify_attempt_finalized(attempt, reason, detail)
    except Exception:
        db.session.rollback()
        logger.exception('Failed to record completion notification for attempt %s', attempt.id)


def finalize_previous_attempt(user, exam):
    # run the normal teardown before start_attempt refuses a finished attempt
    existing = ExamAttempt.query.filter_by(exam_id=exam.id, user_id=user.id).first()
    if existing and finalize_if_expired(existing):
        after_finalize(existing, 'auto_submitted')


def announce_termination(attempt, reason):
    after_finalize(attempt, 'terminated', detail=reason)
    notify_student('exam-terminated', {
        'attempt_id': attempt.id,
        'message': 'Your exam has been terminated due to suspicious activity.',
        'reason': reason,
    }, attempt.id)


def raise_alert(attempt, found):
    alert = CheatingAlert(exam_id=attempt.exam_id, user_id=attempt.user_id, attempt_id=attempt.id,
                          alert_type=found['alert_type'], severity=found['severity'],
                          confidence=found['confidence'], details=json.dumps(found['details']))
    db.session.add(alert)
    db.session.commit()
    payload = alert.to_dict()
    relay_to_monitors('cheating-alert', payload, attempt.exam_id)
    try:
        notify_cheating_alert(alert)
    except Exception:
        db.session.rollback()
        logger.exception('Failed to send notifications for alert %s', alert.id)
    if record_violation(attempt, alert):
        announce_termination(attempt, 'Violation limit reached')
    return payload


def process_activities(attempt, activities, ip=None, ua=None, source='browser'):
    """Run a batch of client activities through detection, telemetry and the live session."""
    if attempt.is_completed:
        raise AttemptError('This attempt has already been submitted', 409)
    if finalize_if_expired(attempt):
        after_finalize(attempt, 'auto_submitted')
        raise AttemptError('Time is up; the attempt was submitted automatically', 409)
    session = session_manager.get_session(attempt.exam_id, attempt.user_id)
    if session and session.status == 'suspended':
        raise AttemptError('Session is suspended by exam staff', 423)

    key = (attempt.exam_id, attempt.user_id)
    alerts = []
    logged = []
    telemetry = False
    for raw in activities:
        if not isinstance(raw, dict):
            continue
        activity = normalize_activity(raw)
        found = detector.analyze(attempt.exam_id, attempt.user_id, raw)
        if activity['action'] not in TELEMETRY_ACTIONS:
            rec = make_record(activity['action'], activity['data'], ip, ua, source)
            attempt.append_record(rec)
            logged.append(rec)
        if found:
            alerts.append(raise_alert(attempt, found))
            if attempt.is_completed:
                break
        telemetry = behavior_engine.ingest(key, activity['action'], activity['data']) or telemetry
        session_manager.update_activity(attempt.exam_id, attempt.user_id, activity['action'], activity['data'])
    db.session.commit()

    if logged:
        relay_to_monitors('student-activity', {'attempt_id': attempt.id, 'user_id': attempt.user_id,
                                               'records': logged}, attempt.exam_id)

    analysis = None
    if telemetry and not attempt.is_completed:
        analysis = behavior_engine.analyze(key)
        if analysis['anomaly_score'] >= app.config['BEHAVIOR_ALERT_THRESHOLD'] and behavior_engine.claim_alert(key):
            alerts.append(raise_alert(attempt, {
                'alert_type': 'suspicious_pattern',
                'severity': analysis['risk_level'],
                'confidence': analysis['confidence'],
                'details': {
                    'patterns': analysis['detected_patterns'],
                    'anomaly_score': analysis['anomaly_score'],
                    'recommendations': analysis['recommendations'],
                },
            }))

    return {
        'status': 'terminated' if attempt.status == 'terminated' else 'ok',
        'processed': len(activities),
        'alerts': alerts,
        'risk_level': analysis['risk_level'] if analysis else None,
    }


def activities_from(payload):
    if isinstance(payload, dict) and isinstance(payload.get('activities'), list):
        return payload['activities']
    if isinstance(payload, dict):
        return [payload]
    return []


def sweep_once():
    with app.app_context():
        for attempt in finalize_expired_attempts():
            after_finalize(attempt, 'auto_submitted')
        for session in session_manager.cleanup_inactive(app.config['SESSION_IDLE_TIMEOUT_MINUTES']):
            behavior_engine.cleanup((session.exam_id, session.user_id))
        for sid, conn in connections.stale_connections(app.config['CONNECTION_TIMEOUT_MINUTES'], role='student'):
            if conn['exam_id']:
                session_manager.handle_disconnect(conn['exam_id'], conn['user_id'])
                relay_to_monitors('student-disconnected', {'user_id': conn['user_id'], 'exam_id': conn['exam_id'],
                                                           'reason': 'timeout'}, conn['exam_id'])
            try:
                disconnect(sid=sid, namespace=STUDENT_NS)
            except Exception:
                logger.exception('Failed to drop stale connection %s', sid)
        detector.clear_stale_cooldowns()


def sweep_loop():
    while True:
        socketio.sleep(app.config['SWEEP_INTERVAL_SECONDS'])
        try:
            sweep_once()
        except Exception:
            logger.exception('Attempt sweep failed')


@app.route('/health')
def health():
    return {'status': 'ok', 'connections': connections.connected_count(), **session_manager.session_stats()}


@app.route('/api/auth/login', methods=['POST'])
def login():
    payload = request.get_json(silent=True) or {}
    user = User.query.filter_by(username=payload.get('username')).first()
    if not user or not user.check_password(payload.get('password') or ''):
        return {'status': 'error', 'message': 'Invalid credentials'}, 401
    if not user.is_active_account:
        return {'status': 'error', 'message': 'Account disabled'}, 403
    login_user(user)
    return {'status': 'ok', 'user': {'id': user.id, 'username': user.username, 'role': user.role,
                                     'college_id': user.college_id}}


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return {'status': 'ok'}


@app.route('/api/exams', methods=['POST'])
@roles_required('super_admin', 'college_admin', 'teacher')
def create_exam():
    payload = request.get_json(silent=True) or {}
    title = (payload.get('title') or '').strip()
    if not title:
        abort(400, description='title is required')
    college_id = current_user.college_id
    if current_user.is_super_admin():
        college_id = payload.get('college_id') or college_id
    if not college_id:
        abort(400, description='college_id is required')

    start_time = parse_datetime(payload.get('start_time'), 'start_time')
    end_time = parse_datetime(payload.get('end_time'), 'end_time')
    if end_time <= start_time:
        abort(400, description='end_time must be after start_time')
    try:
        duration = int(payload.get('duration_minutes', 60))
        total_marks = float(payload.get('total_marks') or 0)
        passing_marks = float(payload.get('passing_marks') or 0)
        max_violations = int(payload.get('max_violations') or 0)
    except (TypeError, ValueError):
        abort(400, description='numeric fields are invalid')
    if duration <= 0:
        abort(400, description='duration_minutes must be positive')

    subject_id = payload.get('subject_id')
    if subject_id:
        subject = db.session.get(Subject, subject_id)
        if not subject or subject.college_id != college_id:
            abort(400, description='Unknown subject')
    class_id = payload.get('class_id')
    if class_id:
        group = db.session.get(ClassGroup, class_id)
        if not group or group.college_id != college_id:
            abort(400, description='Unknown class')

    exam = Exam(title=title, description=payload.get('description'), college_id=college_id,
                subject_id=subject_id, class_id=class_id, creator_id=current_user.id,
                start_time=start_time, end_time=end_time, duration_minutes=duration,
                total_marks=total_marks, passing_marks=passing_marks, max_violations=max_violations)
    db.session.add(exam)
    db.session.commit()
    logger.info('User %s created exam %s', current_user.id, exam.id)
    return {'status': 'ok', 'exam': exam.to_dict()}, 201


@app.route('/api/exams/<int:exam_id>')
@login_required
def get_exam(exam_id):
    exam = load_exam(exam_id)
    manager = can_manage_exam(current_user, exam)
    if not manager and not exam.is_published:
        abort(404)
    data = exam.to_dict()
    data['questions'] = [q.to_dict(include_answer=manager) for q in exam.questions]
    return {'status': 'ok', 'exam': data}


@app.route('/api/exams/<int:exam_id>/questions', methods=['POST'])
@staff_required
def add_question(exam_id):
    exam = load_exam(exam_id, manage=True)
    if exam.is_published:
        return {'status': 'error', 'message': 'Unpublish the exam before changing questions'}, 409
    payload = request.get_json(silent=True) or {}
    text = (payload.get('text') or '').strip()
    qtype = payload.get('type', 'multiple_choice')
    if not text:
        abort(400, description='text is required')
    if qtype not in QUESTION_TYPES:
        abort(400, description='type must be one of %s' % ', '.join(QUESTION_TYPES))
    options = payload.get('options') or []
    if qtype == 'true_false' and not options:
        options = ['true', 'false']
    if not isinstance(options, list):
        abort(400, description='options must be a list')
    correct = payload.get('correct_answer')
    if qtype in ('multiple_choice', 'true_false'):
        if correct is None:
            abort(400, description='correct_answer is required for objective questions')
        if options and str(correct) not in [str(o) for o in options]:
            abort(400, description='correct_answer must be one of the options')
    try:
        marks = float(payload.get('marks', 1))
    except (TypeError, ValueError):
        abort(400, description='marks must be a number')
    if marks <= 0:
        abort(400, description='marks must be positive')

    q = Question(exam_id=exam.id, text=text, type=qtype, options=json.dumps(options),
                 correct_answer=None if correct is None else str(correct), marks=marks)
    db.session.add(q)
    db.session.commit()
    return {'status': 'ok', 'question': q.to_dict(include_answer=True)}, 201


@app.route('/api/exams/<int:exam_id>/publish', methods=['POST'])
@staff_required
def publish_exam(exam_id):
    exam = load_exam(exam_id, manage=True)
    payload = request.get_json(silent=True) or {}
    publish = payload.get('publish', True) in (True, 1, '1', 'true', 'True')
    if publish and not exam.questions:
        return {'status': 'error', 'message': 'Add at least one question before publishing'}, 400
    exam.is_published = publish
    db.session.commit()
    return {'status': 'ok', 'exam': exam.to_dict()}


@app.route('/api/exams/<int:exam_id>/start', methods=['POST'])
@login_required
def start_exam(exam_id):
    exam = Exam.query.get_or_404(exam_id)
    finalize_previous_attempt(current_user, exam)
    attempt, created = start_attempt(current_user, exam, ip=request.remote_addr,
                                     user_agent=request.headers.get('User-Agent'))
    body = {
        'status': 'ok',
        'resumed': not created,
        'attempt': attempt.to_dict(),
        'questions': [q.to_dict() for q in exam.questions],
    }
    return body, 201 if created else 200


@app.route('/api/attempts/<int:attempt_id>')
@login_required
def get_attempt(attempt_id):
    attempt = ExamAttempt.query.get_or_404(attempt_id)
    if attempt.user_id != current_user.id:
        attempt = load_supervised_attempt(attempt_id)
    if finalize_if_expired(attempt):
        after_finalize(attempt, 'auto_submitted')
    return {'status': 'ok', 'attempt': attempt.to_dict()}


@app.route('/api/attempts/<int:attempt_id>/answers', methods=['POST'])
@login_required
def save_attempt(attempt_id):
    attempt = load_own_attempt(attempt_id)
    payload = request.get_json(silent=True) or {}
    was_open = not attempt.is_completed
    try:
        answers = save_answers(attempt, payload.get('answers') or {})
    except AttemptError:
        if was_open and attempt.is_completed:
            after_finalize(attempt, 'auto_submitted')
        raise
    return {'status': 'ok', 'saved': len(answers)}


@app.route('/api/attempts/<int:attempt_id>/submit', methods=['POST'])
@login_required
def submit_exam(attempt_id):
    attempt = load_own_attempt(attempt_id)
    payload = request.get_json(silent=True) or {}
    result = submit_attempt(attempt, payload.get('answers'))
    after_finalize(attempt, attempt.status)
    return {'status': 'ok', 'attempt_status': attempt.status, 'result': result.to_dict()}


@app.route('/api/attempts/<int:attempt_id>/activity', methods=['POST'])
@login_required
def report_activity(attempt_id):
    attempt = load_own_attempt(attempt_id)
    payload = request.get_json(silent=True) or {}
    outcome = process_activities(attempt, activities_from(payload), ip=request.remote_addr,
                                 ua=request.headers.get('User-Agent'), source='browser')
    return outcome


@app.route('/api/attempts/<int:attempt_id>/terminate', methods=['POST'])
@staff_required
def terminate(attempt_id):
    attempt = load_supervised_attempt(attempt_id, manage=True)
    reason = (request.get_json(silent=True) or {}).get('reason') or 'Suspicious activity detected'
    terminate_attempt(attempt, by_user=current_user, reason=reason)
    announce_termination(attempt, reason)
    return {'status': 'ok', 'attempt': attempt.to_dict()}


@app.route('/api/attempts/<int:attempt_id>/suspend', methods=['POST'])
@staff_required
def suspend(attempt_id):
    attempt = load_supervised_attempt(attempt_id)
    if attempt.is_completed:
        return {'status': 'error', 'message': 'Attempt is already finished'}, 409
    reason = (request.get_json(silent=True) or {}).get('reason') or 'Suspended by exam staff'
    session = session_manager.suspend_session(attempt.exam_id, attempt.user_id, reason)
    if not session:
        return {'status': 'error', 'message': 'Student has no live session'}, 404
    attempt.append_record(make_record('session_suspended', {'reason': reason, 'by': current_user.username},
                                      source='system'))
    db.session.commit()
    notify_student('session-suspended', {'attempt_id': attempt.id, 'reason': reason}, attempt.id)
    relay_to_monitors('student-suspended', {'attempt_id': attempt.id, 'user_id': attempt.user_id,
                                            'reason': reason}, attempt.exam_id)
    return {'status': 'ok', 'session': session.to_dict()}


@app.route('/api/attempts/<int:attempt_id>/resume', methods=['POST'])
@staff_required
def resume(attempt_id):
    attempt = load_supervised_attempt(attempt_id)
    session = session_manager.resume_session(attempt.exam_id, attempt.user_id)
    if not session:
        return {'status': 'error', 'message': 'Session is not suspended'}, 409
    attempt.append_record(make_record('session_resumed', {'by': current_user.username}, source='system'))
    db.session.commit()
    notify_student('session-resumed', {'attempt_id': attempt.id}, attempt.id)
    relay_to_monitors('student-resumed', {'attempt_id': attempt.id, 'user_id': attempt.user_id}, attempt.exam_id)
    return {'status': 'ok', 'session': session.to_dict()}


@app.route('/api/attempts/<int:attempt_id>/mark', methods=['POST'])
@staff_required
def mark(attempt_id):
    attempt = load_supervised_attempt(attempt_id, manage=True)
    payload = request.get_json(silent=True) or {}
    result = mark_attempt(attempt, score=payload.get('score'), question_marks=payload.get('question_marks'))
    return {'status': 'ok', 'result': result.to_dict()}


@app.route('/api/monitoring/exams/<int:exam_id>')
@staff_required
def monitoring_status(exam_id):
    exam = load_exam(exam_id)
    return {'status': 'ok', 'exam': exam_status(exam)}


@app.route('/api/monitoring/exams/<int:exam_id>/students')
@staff_required
def monitoring_students(exam_id):
    exam = load_exam(exam_id)
    students = []
    for attempt in ExamAttempt.query.filter_by(exam_id=exam.id).order_by(ExamAttempt.started_at).all():
        session = session_manager.get_session(exam.id, attempt.user_id)
        students.append({
            'attempt_id': attempt.id,
            'user_id': attempt.user_id,
            'username': attempt.user.username if attempt.user else None,
            'roll_no': attempt.user.roll_no if attempt.user else None,
            'attempt_status': attempt.status,
            'violation_count': attempt.violation_count,
            'suspicious_activity': attempt.suspicious_activity,
            'deadline': attempt.deadline.isoformat() if attempt.deadline else None,
            'session': session.to_dict() if session else None,
        })
    return {'status': 'ok', 'students': students}


@app.route('/api/monitoring/exams/<int:exam_id>/alerts')
@staff_required
def monitoring_alerts(exam_id):
    exam = load_exam(exam_id)
    query = CheatingAlert.query.filter_by(exam_id=exam.id)
    severity = request.args.get('severity')
    if severity:
        query = query.filter_by(severity=severity)
    student_id = request.args.get('user_id', type=int)
    if student_id:
        query = query.filter_by(user_id=student_id)
    reviewed = request.args.get('reviewed')
    if reviewed is not None:
        query = query.filter_by(reviewed=reviewed.lower() in ('1', 'true', 'yes'))
    total = query.count()
    limit = max(1, min(request.args.get('limit', 50, type=int), 200))
    offset = max(0, request.args.get('offset', 0, type=int))
    alerts = query.order_by(CheatingAlert.created_at.desc(), CheatingAlert.id.desc()) \
        .offset(offset).limit(limit).all()

    stats = dict((level, 0) for level in SEVERITY_ORDER)
    for level, count in db.session.query(CheatingAlert.severity, db.func.count(CheatingAlert.id)) \
            .filter_by(exam_id=exam.id).group_by(CheatingAlert.severity).all():
        stats[level] = count
    return {'status': 'ok', 'alerts': [a.to_dict() for a in alerts], 'total': total,
            'limit': limit, 'offset': offset, 'stats': stats}


@app.route('/api/monitoring/exams/<int:exam_id>/risk-summary')
@staff_required
def risk_summary(exam_id):
    exam = load_exam(exam_id)
    attempts = ExamAttempt.query.filter_by(exam_id=exam.id).all()
    flagged = []
    for attempt in attempts:
        analysis = summarize_attempt_activity(attempt.records())
        if analysis['is_suspicious']:
            flagged.append({
                'attempt_id': attempt.id,
                'student_id': attempt.user_id,
                'student_name': attempt.user.username if attempt.user else f'User {attempt.user_id}',
                'severity': analysis['severity'],
                'violation_type': analysis['violation_type'],
                'description': analysis['description'],
                'activities': analysis['activities'],
                'violation_count': attempt.violation_count,
            })
    flagged.sort(key=lambda x: SEVERITY_ORDER.get(x['severity'], 4))
    stats = {
        'critical': sum(1 for a in flagged if a['severity'] == 'critical'),
        'high': sum(1 for a in flagged if a['severity'] == 'high'),
        'medium': sum(1 for a in flagged if a['severity'] == 'medium'),
        'total_students': len(attempts),
    }
    return {'status': 'ok', 'attempts': flagged, 'stats': stats}


@app.route('/api/alerts/<int:alert_id>/review', methods=['POST'])
@staff_required
def review_alert(alert_id):
    alert = CheatingAlert.query.get_or_404(alert_id)
    load_exam(alert.exam_id)
    payload = request.get_json(silent=True) or {}
    alert.reviewed = True
    alert.review_notes = payload.get('notes')
    alert.reviewed_by = current_user.id
    db.session.commit()
    return {'status': 'ok', 'alert': alert.to_dict()}


@app.route('/api/exams/<int:exam_id>/rankings')
@staff_required
def exam_rankings(exam_id):
    exam = load_exam(exam_id)
    items = exam_ranking(exam.id)
    return {'status': 'ok', 'items': items, 'of': len(items)}


@app.route('/api/exams/<int:exam_id>/results/mine')
@login_required
def my_result(exam_id):
    exam = load_exam(exam_id)
    result = ExamResult.query.filter_by(exam_id=exam.id, user_id=current_user.id).first()
    if not result:
        abort(404, description='No result for this exam yet')
    return {'status': 'ok', 'result': result.to_dict(),
            'position': rank_position(exam_ranking(exam.id), current_user.id)}


@app.route('/api/subjects/<int:subject_id>/rankings')
@staff_required
def subject_rankings(subject_id):
    subject = Subject.query.get_or_404(subject_id)
    if not current_user.is_super_admin() and subject.college_id != current_user.college_id:
        abort(403, description='Not authorized')
    user_ids = None
    class_id = request.args.get('class_id', type=int)
    if class_id:
        user_ids = [u.id for u in User.query.filter_by(class_id=class_id, role='student').all()]
    items = subject_ranking(subject.id, user_ids)
    return {'status': 'ok', 'items': items, 'of': len(items)}


@app.route('/api/classes/<int:class_id>/rankings')
@staff_required
def class_rankings(class_id):
    group = ClassGroup.query.get_or_404(class_id)
    if not current_user.is_super_admin() and group.college_id != current_user.college_id:
        abort(403, description='Not authorized')
    items = class_ranking(group.id)
    return {'status': 'ok', 'items': items, 'of': len(items)}


@app.route('/api/notifications')
@login_required
def list_notifications():
    query = Notification.query.filter_by(user_id=current_user.id)
    if request.args.get('unread') in ('1', 'true'):
        query = query.filter_by(is_read=False)
    items = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(100).all()
    return {'status': 'ok', 'notifications': [n.to_dict() for n in items],
            'unread': Notification.query.filter_by(user_id=current_user.id, is_read=False).count()}


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def read_notification(notification_id):
    n = Notification.query.get_or_404(notification_id)
    if n.user_id != current_user.id:
        abort(403, description='Not authorized')
    n.is_read = True
    db.session.commit()
    return {'status': 'ok'}


# Socket.IO handlers for live monitoring (staff dashboards)
@socketio.on('connect', namespace=MONITOR_NS)
def monitor_connect(auth=None):
    if not current_user.is_authenticated or not current_user.is_staff():
        return False
    connections.connect(request.sid, current_user.id, current_user.role, current_user.college_id)


@socketio.on('disconnect', namespace=MONITOR_NS)
def monitor_disconnect(reason=None):
    connections.disconnect(request.sid)


@socketio.on('subscribe-exam', namespace=MONITOR_NS)
def monitor_subscribe(data):
    try:
        exam_id = int((data or {}).get('exam_id'))
    except (TypeError, ValueError):
        return {'status': 'error', 'message': 'exam_id required'}
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return {'status': 'error', 'message': 'Exam not found'}
    if not can_access_exam(current_user, exam):
        return {'status': 'error', 'message': 'Not authorized'}
    join_room(exam_room(exam.id))
    connections.bind_exam(request.sid, exam.id)
    emit('exam-status', exam_status(exam))
    return {'status': 'ok', 'exam_id': exam.id}


@socketio.on('unsubscribe-exam', namespace=MONITOR_NS)
def monitor_unsubscribe(data):
    try:
        exam_id = int((data or {}).get('exam_id'))
    except (TypeError, ValueError):
        return {'status': 'error', 'message': 'exam_id required'}
    leave_room(exam_room(exam_id))
    connections.bind_exam(request.sid, None)
    return {'status': 'ok'}


# Socket.IO handlers for students taking an exam
@socketio.on('connect', namespace=STUDENT_NS)
def student_connect(auth=None):
    if not current_user.is_authenticated or current_user.role != 'student':
        return False
    connections.connect(request.sid, current_user.id, current_user.role, current_user.college_id)


@socketio.on('join-exam', namespace=STUDENT_NS)
def student_join(data):
    try:
        exam_id = int((data or {}).get('exam_id'))
    except (TypeError, ValueError):
        return {'status': 'error', 'message': 'exam_id required'}
    exam = db.session.get(Exam, exam_id)
    if not exam:
        return {'status': 'error', 'message': 'Exam not found'}
    finalize_previous_attempt(current_user, exam)
    try:
        attempt, created = start_attempt(current_user, exam, ip=request.remote_addr,
                                         user_agent=request.headers.get('User-Agent'))
    except AttemptError as e:
        return {'status': 'error', 'message': e.message}

    join_room(exam_room(exam.id))
    join_room(attempt_room(attempt.id))
    connections.bind_exam(request.sid, exam.id, attempt.id)
    session = session_manager.start_session(exam.id, current_user.id, request.sid,
                                            total_questions=len(exam.questions), attempt_id=attempt.id)
    relay_to_monitors('student-joined', {
        'user_id': current_user.id,
        'username': current_user.username,
        'attempt_id': attempt.id,
        'resumed': not created,
        'timestamp': datetime.now().isoformat(),
    }, exam.id)
    return {'status': 'ok', 'attempt': attempt.to_dict(), 'resumed': not created, 'session': session.to_dict()}


def _bound_attempt():
    conn = connections.touch(request.sid)
    if not conn or not conn['attempt_id']:
        return None
    return db.session.get(ExamAttempt, conn['attempt_id'])


@socketio.on('activity-update', namespace=STUDENT_NS)
def student_activity(data):
    attempt = _bound_attempt()
    if attempt is None:
        return {'status': 'error', 'message': 'Join an exam first'}
    try:
        return process_activities(attempt, activities_from(data), ip=request.remote_addr,
                                  ua=request.headers.get('User-Agent'), source='socket')
    except AttemptError as e:
        return {'status': 'error', 'message': e.message}


@socketio.on('submit-exam', namespace=STUDENT_NS)
def student_submit(data):
    attempt = _bound_attempt()
    if attempt is None:
        return {'status': 'error', 'message': 'Join an exam first'}
    try:
        result = submit_attempt(attempt, (data or {}).get('answers'))
    except AttemptError as e:
        return {'status': 'error', 'message': e.message}
    after_finalize(attempt, attempt.status)
    return {'status': 'ok', 'attempt_status': attempt.status, 'result': result.to_dict()}


@socketio.on('heartbeat', namespace=STUDENT_NS)
def student_heartbeat(data=None):
    attempt = _bound_attempt()
    body = {'status': 'ok', 'server_time': datetime.now().isoformat()}
    if attempt is not None:
        if attempt.deadline and not attempt.is_completed:
            body['time_remaining'] = max(0, int((attempt.deadline - datetime.now()).total_seconds()))
        body['expired'] = is_expired(attempt)
    return body


@socketio.on('disconnect', namespace=STUDENT_NS)
def student_disconnect(reason=None):
    conn = connections.disconnect(request.sid)
    if not conn or not conn['exam_id']:
        return
    session = session_manager.get_session(conn['exam_id'], conn['user_id'])
    # a reconnect may already have moved the session to a newer socket
    if session and session.socket_id == request.sid:
        session_manager.handle_disconnect(conn['exam_id'], conn['user_id'])
        relay_to_monitors('student-disconnected', {'user_id': conn['user_id'], 'exam_id': conn['exam_id'],
                                                   'reason': 'disconnect'}, conn['exam_id'])


if __name__ == '__main__':
    # Support hosting panels which may expose the port via different env vars
    port_env = os.environ.get('PORT') or os.environ.get('SERVER_PORT')
    try:
        port = int(port_env) if port_env else 25570
    except ValueError:
        port = 25570
    host = os.environ.get('HOST', '0.0.0.0')

    init_app()
    socketio.start_background_task(sweep_loop)

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Using database URL: {app.config.get('SQLALCHEMY_DATABASE_URI')}")
    socketio.run(
        app,
        host=host,
        port=port,
        debug=False,
        allow_unsafe_werkzeug=True
    )
