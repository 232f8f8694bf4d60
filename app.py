"""
Flask Web Application for slot-filling collection flows

Thin transport over CollectionEngine: one engine per schema domain.
Message turns are streamed as NDJSON events:

    {"type": "chunk", "content": "..."}                  (0..n)
    {"type": "complete", ...TurnResult.to_json()}        or
    {"type": "cancelled", "redispatch_message": "..."}   or
    {"type": "error", "error": "...", "retryable": bool}
"""

import json
import logging
import os

from flask import Flask, Response, jsonify, request, stream_with_context

from coachflow.contracts import ConversationMessage, GenerationTicket
from coachflow.core.completion_trigger import LockAcquisitionError
from coachflow.persistence import PersistenceError
from coachflow.results import IllegalCommand

logger = logging.getLogger(__name__)


def _event(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str) + "\n"


def create_app(engines, lifecycle):
    """
    Build the Flask app.

    Args:
        engines: Domain -> CollectionEngine
        lifecycle: Shared SessionLifecycleManager (session reads)

    Returns:
        Flask: Configured app
    """
    app = Flask(__name__)
    app.config['ENGINES'] = engines

    @app.errorhandler(LockAcquisitionError)
    def handle_lock_error(e):
        logger.error(f"Lock acquisition failed: {e}")
        return jsonify({'success': False, 'error': str(e), 'retryable': True}), 503

    @app.errorhandler(PersistenceError)
    def handle_persistence_error(e):
        logger.error(f"Persistence failure: {e}")
        return jsonify({'success': False, 'error': str(e), 'retryable': True}), 503

    @app.route('/api/health')
    def health():
        """Health check"""
        return jsonify({'status': 'ok', 'domains': sorted(engines)})

    @app.route('/api/<domain>/conversations/<conversation_id>/messages', methods=['POST'])
    def post_message(domain, conversation_id):
        """Process one user message and stream the reply"""
        engine = engines.get(domain)
        if engine is None:
            return jsonify({'success': False, 'error': f"Unknown domain '{domain}'"}), 404

        data = request.get_json(silent=True) or {}
        user_id = data.get('user_id')
        user_text = data.get('message')

        if not user_id or not isinstance(user_text, str) or not user_text.strip():
            return jsonify({'success': False, 'error': 'user_id and message are required'}), 400

        try:
            pre_session_history = [
                ConversationMessage.from_json(m) for m in data.get('history', [])
            ]
        except (KeyError, ValueError, TypeError) as e:
            return jsonify({'success': False, 'error': f"Invalid history: {e}"}), 400

        turn = engine.handle_turn(
            user_id,
            conversation_id,
            user_text,
            image_refs=data.get('image_refs') or (),
            domain_context=data.get('domain_context'),
            pre_session_history=pre_session_history,
            persona=data.get('persona'),
        )

        def events():
            try:
                for fragment in turn:
                    yield _event({'type': 'chunk', 'content': fragment})

                result = turn.result
                if result.session_cancelled:
                    yield _event({
                        'type': 'cancelled',
                        'session_id': result.session.session_id,
                        'redispatch_message': result.redispatch_message,
                    })
                else:
                    yield _event({'type': 'complete', **result.to_json()})

            except (LockAcquisitionError, PersistenceError) as e:
                logger.error(f"Turn aborted for {user_id}/{conversation_id}: {e}")
                yield _event({'type': 'error', 'error': str(e), 'retryable': True})

            except Exception as e:
                logger.exception(f"Unexpected error in turn for {user_id}/{conversation_id}")
                yield _event({'type': 'error', 'error': str(e), 'retryable': False})

        return Response(stream_with_context(events()), mimetype='application/x-ndjson')

    @app.route('/api/<domain>/conversations/<conversation_id>/session', methods=['DELETE'])
    def cancel_session(domain, conversation_id):
        """Cancel the active collection session"""
        engine = engines.get(domain)
        if engine is None:
            return jsonify({'success': False, 'error': f"Unknown domain '{domain}'"}), 404

        data = request.get_json(silent=True) or {}
        user_id = request.args.get('user_id') or data.get('user_id')
        if not user_id:
            return jsonify({'success': False, 'error': 'user_id is required'}), 400

        result = engine.cancel(user_id, conversation_id, data.get('reason', 'user_cancelled'))
        if isinstance(result, IllegalCommand):
            return jsonify({'success': False, 'error': result.reason}), 409

        return jsonify({
            'success': True,
            'session': lifecycle.summarize(result, engine.schema),
        })

    @app.route('/api/users/<user_id>/sessions/<session_id>')
    def get_session(user_id, session_id):
        """Return a session document"""
        try:
            session = lifecycle.load_by_id(user_id, session_id)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        if session is None:
            return jsonify({'success': False, 'error': 'Session not found'}), 404

        return jsonify({'success': True, 'session': session.to_json()})

    @app.route('/api/generation/report', methods=['POST'])
    def report_generation():
        """Downstream worker reports a generation outcome"""
        data = request.get_json(silent=True) or {}

        try:
            ticket = GenerationTicket.from_json(data.get('ticket') or {})
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        engine = engines.get(ticket.domain)
        if engine is None:
            return jsonify({'success': False, 'error': f"Unknown domain '{ticket.domain}'"}), 404

        result = engine.report_completion(
            ticket, result_id=data.get('result_id'), error=data.get('error')
        )
        if isinstance(result, IllegalCommand):
            return jsonify({'success': False, 'error': result.reason}), 409

        return jsonify({
            'success': True,
            'session_id': result.session_id,
            'generation_status': result.generation_lock.status.value,
            'result_id': result.generation_lock.result_id,
        })

    return app


if __name__ == '__main__':
    from coachflow.factory import build_engines, settings_from_env
    from coachflow.utils.hf_client import HuggingFaceClient

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = settings_from_env()

    logger.info("Initializing HuggingFace model (this takes ~30 seconds)...")
    client = HuggingFaceClient(model_name=settings['model'], load_in_4bit=True)

    engines, lifecycle, dispatcher = build_engines(
        client, schema_dir=settings['schema_dir'], data_dir=settings['data_dir']
    )
    app = create_app(engines, lifecycle)

    print("\n" + "=" * 60)
    print("COACHFLOW COLLECTION API")
    print("=" * 60)
    print(f"\nDomains: {', '.join(sorted(engines))}")
    print("Listening on: http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(debug=False, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)
    finally:
        dispatcher.shutdown(wait=True)
