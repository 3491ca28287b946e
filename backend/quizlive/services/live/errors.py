"""Expected, user-facing rejections raised by the live session engine.

None of these indicate a defect: they are returned to whoever initiated the
request or socket event (HTTP error body, or an ``error`` event on the socket).
"""


class LiveSessionError(Exception):
    code = 'live_session_error'
    status = 400
    default_message = 'Live session error'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self):
        return {'code': self.code, 'message': self.message}


class NotFound(LiveSessionError):
    code = 'not_found'
    status = 404
    default_message = 'Not found'


class CapacityExceeded(LiveSessionError):
    code = 'capacity_exceeded'
    status = 409
    default_message = 'Session is full'


class LateJoinForbidden(LiveSessionError):
    code = 'late_join_forbidden'
    status = 403
    default_message = 'Late joining is not allowed'


class DuplicateAnswer(LiveSessionError):
    code = 'duplicate_answer'
    status = 409
    default_message = 'Already answered this question'


class SessionNotActive(LiveSessionError):
    code = 'session_not_active'
    status = 409
    default_message = 'Session is not active'


class SessionEnded(SessionNotActive):
    code = 'session_ended'
    default_message = 'Session has ended'


class AlreadyActive(LiveSessionError):
    code = 'already_active'
    status = 409
    default_message = 'Session is already active'


class NotPaused(LiveSessionError):
    code = 'not_paused'
    status = 409
    default_message = 'Session is not paused'


class Forbidden(LiveSessionError):
    code = 'forbidden'
    status = 403
    default_message = 'Only the host may do that'


class QuestionClosed(LiveSessionError):
    code = 'question_closed'
    status = 409
    default_message = 'Question is no longer accepting answers'


class QuizNotPublished(LiveSessionError):
    code = 'quiz_not_published'
    status = 400
    default_message = 'Quiz is not published'


class InvalidPayload(LiveSessionError):
    code = 'invalid_payload'
    status = 400
    default_message = 'Invalid payload'


class ParticipantConflict(LiveSessionError):
    code = 'participant_conflict'
    status = 409
    default_message = 'Participant is already in another live session'
