from flask import Blueprint, jsonify, request, current_app

from quizlive.services.live import LiveSessionError


sessions = Blueprint('sessions', __name__)


def _controller():
    return current_app.extensions['quizlive']


def _body():
    return request.get_json(silent=True) or {}


@sessions.errorhandler(LiveSessionError)
def handle_live_session_error(exc):
    return jsonify({'error': exc.message, 'code': exc.code}), exc.status


@sessions.route('', methods=['POST'])
@sessions.route('/', methods=['POST'])
def create_session():
    data = _body()
    controller = _controller()
    session = controller.create_session(data.get('quizId'), data.get('config'), data.get('hostId'))
    return jsonify({
        'message': 'Live session created!',
        'session': controller.describe(session.id),
    }), 201


@sessions.route('', methods=['GET'])
@sessions.route('/', methods=['GET'])
def list_sessions():
    live = [s.public_dict() for s in _controller().list_active()]
    return jsonify({'sessions': live}), 200


@sessions.route('/<session_id>', methods=['GET'])
def get_session(session_id):
    return jsonify(_controller().describe(session_id)), 200


@sessions.route('/<session_id>/info', methods=['GET'])
def session_info(session_id):
    return jsonify(_controller().session_info(session_id)), 200


@sessions.route('/<session_id>/start', methods=['POST'])
def start_session(session_id):
    controller = _controller()
    controller.start(session_id, _body().get('hostId'))
    return jsonify(controller.describe(session_id)), 200


@sessions.route('/<session_id>/pause', methods=['POST'])
def pause_session(session_id):
    controller = _controller()
    controller.pause(session_id, _body().get('hostId'))
    return jsonify(controller.describe(session_id)), 200


@sessions.route('/<session_id>/resume', methods=['POST'])
def resume_session(session_id):
    controller = _controller()
    controller.resume(session_id, _body().get('hostId'))
    return jsonify(controller.describe(session_id)), 200


@sessions.route('/<session_id>/question', methods=['POST'])
def change_question(session_id):
    data = _body()
    controller = _controller()
    controller.change_question(session_id, data.get('hostId'), data.get('questionIndex'))
    return jsonify(controller.describe(session_id)), 200


@sessions.route('/<session_id>/end', methods=['POST'])
def end_session(session_id):
    controller = _controller()
    results = controller.end(session_id, _body().get('hostId'))
    return jsonify({'session': controller.describe(session_id), 'results': results}), 200


@sessions.route('/<session_id>/join', methods=['POST'])
def join_session(session_id):
    data = _body()
    participant, reconnected = _controller().join(session_id, data.get('name'), data.get('participantId'))
    status = 200 if reconnected else 201
    return jsonify({'participant': participant.to_dict(), 'reconnected': reconnected}), status


@sessions.route('/<session_id>/participants/<participant_id>', methods=['DELETE'])
def remove_participant(session_id, participant_id):
    participant = _controller().leave(session_id, participant_id)
    return jsonify({'message': 'Participant removed', 'participantId': participant.id}), 200


@sessions.route('/<session_id>/answers', methods=['POST'])
def submit_answer(session_id):
    data = _body()
    if 'answer' not in data:
        return jsonify({'error': 'answer is required', 'code': 'invalid_payload'}), 400
    result = _controller().submit_answer(
        session_id,
        data.get('participantId'),
        data.get('questionIndex'),
        data['answer'],
        client_timestamp=data.get('timestamp'),
    )
    return jsonify(result.to_dict()), 201


@sessions.route('/<session_id>/leaderboard', methods=['GET'])
def leaderboard(session_id):
    limit = request.args.get('limit')
    board = _controller().leaderboard(session_id, limit)
    return jsonify({'sessionId': session_id, 'leaderboard': board}), 200


@sessions.route('/<session_id>/stats', methods=['GET'])
def stats(session_id):
    return jsonify(_controller().stats(session_id)), 200
