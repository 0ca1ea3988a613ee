"""In-memory registry of live exam sessions and socket connections.

State lives in this process only. The database remains the source of truth
for attempts; sessions carry the live view (status, progress, recent
activity) that the monitoring dashboard needs between database writes.
"""
from collections import deque
from datetime import datetime, timedelta
import logging
import threading

logger = logging.getLogger(__name__)

ACTIVITY_LOG_LIMIT = 200


class ExamSession(object):
    def __init__(self, exam_id, user_id, socket_id, total_questions=0, attempt_id=None):
        now = datetime.now()
        self.exam_id = exam_id
        self.user_id = user_id
        self.attempt_id = attempt_id
        self.socket_id = socket_id
        self.started_at = now
        self.last_activity = now
        self.status = 'active'
        self.total_questions = total_questions
        self.answered_questions = 0
        self.time_spent = 0
        self.current_question = None
        self.activity_log = deque(maxlen=ACTIVITY_LOG_LIMIT)

    def log(self, action, data=None):
        self.last_activity = datetime.now()
        self.activity_log.append({'action': action, 'timestamp': self.last_activity, 'data': data or {}})

    @property
    def progress(self):
        if not self.total_questions:
            return 0.0
        return min(1.0, self.answered_questions / float(self.total_questions))

    def to_dict(self):
        return {
            'exam_id': self.exam_id,
            'user_id': self.user_id,
            'attempt_id': self.attempt_id,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'last_activity': self.last_activity.isoformat(),
            'progress': {
                'total_questions': self.total_questions,
                'answered_questions': self.answered_questions,
                'time_spent': self.time_spent,
                'current_question': self.current_question,
            },
        }


class ExamSessionManager(object):
    def __init__(self):
        self._sessions = {}
        self._lock = threading.Lock()

    def start_session(self, exam_id, user_id, socket_id, total_questions=0, attempt_id=None):
        key = (exam_id, user_id)
        with self._lock:
            session = self._sessions.get(key)
            if session and session.status != 'completed':
                # reconnecting student keeps progress and log
                session.socket_id = socket_id
                if session.status == 'disconnected':
                    session.status = 'active'
                session.log('session_resumed', {'socket_id': socket_id})
                return session
            session = ExamSession(exam_id, user_id, socket_id, total_questions, attempt_id)
            session.log('session_started', {'socket_id': socket_id})
            self._sessions[key] = session
        logger.info('Started exam session for user %s in exam %s', user_id, exam_id)
        return session

    def get_session(self, exam_id, user_id):
        return self._sessions.get((exam_id, user_id))

    def update_activity(self, exam_id, user_id, action, data=None):
        data = data or {}
        with self._lock:
            session = self._sessions.get((exam_id, user_id))
            if not session:
                logger.warning('Session not found for exam %s user %s', exam_id, user_id)
                return None
            session.log(action, data)
            if action == 'question_answered':
                session.answered_questions = max(session.answered_questions,
                                                 _as_int(data.get('question_number')))
            elif action == 'time_update':
                session.time_spent = _as_int(data.get('time_spent'))
            elif action == 'question_viewed':
                question_id = data.get('question_id')
                session.current_question = str(question_id) if question_id is not None else None
            return session

    def handle_disconnect(self, exam_id, user_id):
        with self._lock:
            session = self._sessions.get((exam_id, user_id))
            if not session or session.status == 'completed':
                return None
            if session.status != 'suspended':
                session.status = 'disconnected'
            session.log('disconnected')
        logger.info('User %s disconnected from exam %s', user_id, exam_id)
        return session

    def complete_session(self, exam_id, user_id, answered=None):
        with self._lock:
            session = self._sessions.pop((exam_id, user_id), None)
        if not session:
            return None
        session.status = 'completed'
        if answered is not None:
            session.answered_questions = answered
        session.log('exam_submitted')
        logger.info('User %s completed exam %s', user_id, exam_id)
        return session

    def suspend_session(self, exam_id, user_id, reason):
        with self._lock:
            session = self._sessions.get((exam_id, user_id))
            if not session:
                return None
            session.status = 'suspended'
            session.log('session_suspended', {'reason': reason})
        logger.info('Suspended session for user %s in exam %s: %s', user_id, exam_id, reason)
        return session

    def resume_session(self, exam_id, user_id):
        with self._lock:
            session = self._sessions.get((exam_id, user_id))
            if not session or session.status != 'suspended':
                return None
            session.status = 'active'
            session.log('session_resumed')
        logger.info('Resumed session for user %s in exam %s', user_id, exam_id)
        return session

    def sessions_for_exam(self, exam_id, status=None):
        with self._lock:
            items = [s for s in self._sessions.values() if s.exam_id == exam_id]
        if status:
            items = [s for s in items if s.status == status]
        return items

    def active_sessions(self, exam_id):
        return self.sessions_for_exam(exam_id, 'active')

    def recent_activities(self, exam_id, user_id, limit=50):
        session = self.get_session(exam_id, user_id)
        if not session:
            return []
        return list(session.activity_log)[-limit:]

    def exam_summary(self, exam_id):
        sessions = self.sessions_for_exam(exam_id)
        active = [s for s in sessions if s.status == 'active']
        average = sum(s.progress for s in active) / len(active) if active else 0.0
        return {
            'active': len(active),
            'disconnected': sum(1 for s in sessions if s.status == 'disconnected'),
            'suspended': sum(1 for s in sessions if s.status == 'suspended'),
            'average_progress': int(round(average * 100)),
        }

    def session_stats(self):
        with self._lock:
            sessions = list(self._sessions.values())
        by_exam = {}
        for s in sessions:
            by_exam[s.exam_id] = by_exam.get(s.exam_id, 0) + 1
        return {
            'total_sessions': len(sessions),
            'active_sessions': sum(1 for s in sessions if s.status == 'active'),
            'disconnected_sessions': sum(1 for s in sessions if s.status == 'disconnected'),
            'suspended_sessions': sum(1 for s in sessions if s.status == 'suspended'),
            'sessions_by_exam': by_exam,
        }

    def cleanup_inactive(self, timeout_minutes=30):
        cutoff = datetime.now() - timedelta(minutes=timeout_minutes)
        removed = []
        with self._lock:
            for key, session in list(self._sessions.items()):
                # a suspended student cannot report activity; only staff lift it
                if session.status == 'suspended':
                    continue
                if session.last_activity < cutoff:
                    session.status = 'disconnected'
                    session.log('session_timeout')
                    removed.append(self._sessions.pop(key))
        for session in removed:
            logger.info('Cleaned up inactive session for user %s in exam %s',
                        session.user_id, session.exam_id)
        return removed


class ConnectionRegistry(object):
    """Socket id -> connected user, with the exam the socket is bound to."""

    def __init__(self):
        self._connections = {}
        self._lock = threading.Lock()

    def connect(self, sid, user_id, role, college_id=None):
        with self._lock:
            self._connections[sid] = {
                'user_id': user_id,
                'role': role,
                'college_id': college_id,
                'exam_id': None,
                'attempt_id': None,
                'last_activity': datetime.now(),
            }

    def get(self, sid):
        return self._connections.get(sid)

    def bind_exam(self, sid, exam_id, attempt_id=None):
        with self._lock:
            conn = self._connections.get(sid)
            if conn:
                conn['exam_id'] = exam_id
                conn['attempt_id'] = attempt_id
                conn['last_activity'] = datetime.now()
            return conn

    def touch(self, sid):
        with self._lock:
            conn = self._connections.get(sid)
            if conn:
                conn['last_activity'] = datetime.now()
            return conn

    def disconnect(self, sid):
        with self._lock:
            return self._connections.pop(sid, None)

    def connected_count(self, exam_id=None):
        with self._lock:
            conns = list(self._connections.values())
        if exam_id is None:
            return len(conns)
        return sum(1 for c in conns if c['exam_id'] == exam_id)

    def stale_connections(self, timeout_minutes=5, role=None):
        cutoff = datetime.now() - timedelta(minutes=timeout_minutes)
        with self._lock:
            stale = [(sid, dict(c)) for sid, c in self._connections.items()
                     if c['last_activity'] < cutoff and (role is None or c['role'] == role)]
            for sid, _ in stale:
                self._connections.pop(sid, None)
        return stale


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
