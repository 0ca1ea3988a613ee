from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
import json

db = SQLAlchemy()

STAFF_ROLES = ('super_admin', 'college_admin', 'teacher')
OBJECTIVE_TYPES = ('multiple_choice', 'true_false')


def load_json(raw, default):
    # JSON columns are stored as Text; tolerate empty or corrupt values
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class College(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(40), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class ClassGroup(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=False)


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(40), nullable=True)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=False)


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'super_admin', 'college_admin', 'teacher', 'student'
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=True)
    roll_no = db.Column(db.String(40), nullable=True)
    is_active_account = db.Column(db.Boolean, nullable=False, default=True)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def is_staff(self):
        return self.role in STAFF_ROLES

    def is_super_admin(self):
        return self.role == 'super_admin'


class Exam(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    # availability window; each attempt also gets its own duration
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    total_marks = db.Column(db.Float, nullable=False, default=0)
    passing_marks = db.Column(db.Float, nullable=False, default=0)
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    max_violations = db.Column(db.Integer, nullable=False, default=0)  # 0 disables auto-termination

    questions = db.relationship('Question', backref='exam', lazy=True, order_by='Question.id')

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'college_id': self.college_id,
            'subject_id': self.subject_id,
            'class_id': self.class_id,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_minutes': self.duration_minutes,
            'total_marks': self.total_marks,
            'passing_marks': self.passing_marks,
            'is_published': self.is_published,
            'is_active': self.is_active,
        }


class Question(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=False)
    text = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False, default='multiple_choice')
    options = db.Column(db.Text, nullable=True)  # JSON list of choices
    correct_answer = db.Column(db.Text, nullable=True)
    marks = db.Column(db.Float, nullable=False, default=1)

    @property
    def options_list(self):
        return load_json(self.options, [])

    def is_objective(self):
        return self.type in OBJECTIVE_TYPES

    def to_dict(self, include_answer=False):
        data = {'id': self.id, 'text': self.text, 'type': self.type,
                'options': self.options_list, 'marks': self.marks}
        if include_answer:
            data['correct_answer'] = self.correct_answer
        return data


class ExamAttempt(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'exam_id', name='uq_attempt_user_exam'),)

    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    started_at = db.Column(db.DateTime, nullable=False)
    deadline = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(20), nullable=False, default='in_progress')
    answers = db.Column(db.Text, nullable=True)  # JSON mapping question_id -> answer
    activity_log = db.Column(db.Text, nullable=True)  # JSON list of activity/violation records
    marks_breakdown = db.Column(db.Text, nullable=True)  # JSON question_id -> {awarded, correct}
    violation_count = db.Column(db.Integer, nullable=False, default=0)
    suspicious_activity = db.Column(db.Boolean, nullable=False, default=False)
    score = db.Column(db.Float, nullable=True)
    total_marks = db.Column(db.Float, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(300), nullable=True)

    exam = db.relationship('Exam', backref='attempts', foreign_keys=[exam_id])
    user = db.relationship('User', backref='attempts', foreign_keys=[user_id])

    def answers_dict(self):
        return load_json(self.answers, {})

    def breakdown(self):
        return load_json(self.marks_breakdown, {})

    def records(self):
        return load_json(self.activity_log, [])

    def append_record(self, rec):
        existing = self.records()
        existing.append(rec)
        self.activity_log = json.dumps(existing)

    def to_dict(self):
        return {
            'id': self.id,
            'exam_id': self.exam_id,
            'user_id': self.user_id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'deadline': self.deadline.isoformat() if self.deadline else None,
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'is_completed': self.is_completed,
            'violation_count': self.violation_count,
            'suspicious_activity': self.suspicious_activity,
            'score': self.score,
            'total_marks': self.total_marks,
            'answers': self.answers_dict(),
        }


class ExamResult(db.Model):
    __table_args__ = (db.UniqueConstraint('user_id', 'exam_id', name='uq_result_user_exam'),)

    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    score = db.Column(db.Float, nullable=False, default=0)
    total_marks = db.Column(db.Float, nullable=False, default=0)
    percentage = db.Column(db.Float, nullable=False, default=0)
    grade = db.Column(db.String(4), nullable=True)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    is_completed = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    exam = db.relationship('Exam', foreign_keys=[exam_id])
    user = db.relationship('User', foreign_keys=[user_id])

    def to_dict(self):
        return {
            'exam_id': self.exam_id,
            'user_id': self.user_id,
            'score': self.score,
            'total_marks': self.total_marks,
            'percentage': round(self.percentage, 2),
            'grade': self.grade,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
        }


class GradeBoundary(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    grade = db.Column(db.String(4), nullable=False)
    min_percentage = db.Column(db.Float, nullable=False)
    max_percentage = db.Column(db.Float, nullable=False)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)


class CheatingAlert(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id'), nullable=True)
    alert_type = db.Column(db.String(60), nullable=False)
    severity = db.Column(db.String(10), nullable=False)
    confidence = db.Column(db.Float, nullable=False, default=0)
    details = db.Column(db.Text, nullable=True)  # JSON
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    reviewed = db.Column(db.Boolean, nullable=False, default=False)
    review_notes = db.Column(db.Text, nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    user = db.relationship('User', foreign_keys=[user_id])

    def to_dict(self):
        return {
            'id': self.id,
            'exam_id': self.exam_id,
            'user_id': self.user_id,
            'student_name': self.user.username if self.user else f'User {self.user_id}',
            'attempt_id': self.attempt_id,
            'alert_type': self.alert_type,
            'severity': self.severity,
            'confidence': self.confidence,
            'details': load_json(self.details, {}),
            'created_at': self.created_at.isoformat(),
            'reviewed': self.reviewed,
            'notes': self.review_notes,
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    college_id = db.Column(db.Integer, db.ForeignKey('college.id'), nullable=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False, default='info')
    priority = db.Column(db.String(10), nullable=False, default='medium')
    data = db.Column(db.Text, nullable=True)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'priority': self.priority,
            'exam_id': self.exam_id,
            'data': load_json(self.data, {}),
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat(),
        }
