"""Quart application exposing document processing and RAG chat."""
from typing import Optional

import structlog
from pydantic import ValidationError
from quart import Quart, jsonify, request

from plugrag.exceptions import JobError
from plugrag.jobs import enqueue_document
from plugrag.log import configure_logging
from plugrag.services import Services, build_services

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 2000


def create_app(services: Optional[Services] = None) -> Quart:
    """Create the app; components are built at startup unless injected."""
    app = Quart(__name__)

    @app.before_serving
    async def startup():
        configure_logging()
        if services is not None:
            app.config["SERVICES"] = services
        elif "SERVICES" not in app.config:
            app.config["SERVICES"] = build_services()
        logger.info("app_started")

    @app.after_serving
    async def shutdown():
        await _services().orchestrator.drain_usage()

    def _services() -> Services:
        return app.config["SERVICES"]

    @app.route("/api/documents/<document_id>/process", methods=["POST"])
    async def process_document(document_id: str):
        """Queue an uploaded document for processing.

        Returns 202 with the job handle; a job already waiting or running
        for the document is returned unchanged.
        """
        svc = _services()
        try:
            document = svc.db.get_document(document_id)
            if document is None:
                return jsonify({"error": "Document not found"}), 404

            handle = enqueue_document(svc.db, svc.queue, document)

            return jsonify({
                "job_id": handle.job_id,
                "state": handle.state.value,
                "created": handle.created,
            }), 202

        except ValidationError as e:
            logger.error("job_payload_invalid", document_id=document_id, error=str(e))
            return jsonify({"error": "Document record is incomplete"}), 400
        except Exception as e:
            logger.error("process_document_error", document_id=document_id, error=str(e), error_type=type(e).__name__)
            return jsonify({"error": "Failed to queue document"}), 500

    @app.route("/api/documents/<document_id>/status", methods=["GET"])
    async def document_status(document_id: str):
        """Document processing state plus the job's progress."""
        svc = _services()
        try:
            document = svc.db.get_document(document_id)
            if document is None:
                return jsonify({"error": "Document not found"}), 404

            return jsonify({
                "document_id": document.id,
                "status": document.status,
                "embedding_status": document.embedding_status,
                "chunk_count": document.chunk_count,
                "vector_count": document.vector_count,
                "token_count": document.token_count,
                "estimated_cost": document.estimated_cost,
                "processing_error": document.processing_error,
                "job": svc.queue.status(document_id),
            })

        except Exception as e:
            logger.error("document_status_error", document_id=document_id, error=str(e))
            return jsonify({"error": "Failed to get document status"}), 500

    @app.route("/api/documents/<document_id>/job", methods=["DELETE"])
    async def remove_job(document_id: str):
        """Remove a finished or waiting job."""
        try:
            removed = _services().queue.remove(document_id)
            if not removed:
                return jsonify({"error": "Job not found"}), 404
            return "", 204
        except JobError as e:
            return jsonify({"error": str(e)}), 409

    @app.route("/api/chat/<bot_id>", methods=["POST"])
    async def chat(bot_id: str):
        """Answer a question from the bot's knowledge base.

        Expects JSON body:
        {
            "message": "user message text",
            "session_id": "optional-session-id"  // creates new if not provided
        }
        """
        svc = _services()
        try:
            data = await request.get_json()
            if not data or "message" not in data:
                return jsonify({"error": "Missing 'message' in request body"}), 400

            message = str(data["message"]).strip()
            if not message:
                return jsonify({"error": "Message cannot be empty"}), 400
            if len(message) > MAX_MESSAGE_LENGTH:
                return jsonify({"error": f"Message too long (max {MAX_MESSAGE_LENGTH} characters)"}), 400

            session_id = data.get("session_id")
            if session_id:
                if svc.conversations.get_session(session_id, bot_id=bot_id) is None:
                    return jsonify({"error": "Session not found"}), 404
            else:
                session_id = svc.conversations.create_session(bot_id, first_message=message)

            history = svc.conversations.format_conversation_history(session_id)
            answer = await svc.orchestrator.answer(bot_id, message, history)

            svc.conversations.record_exchange(session_id, message, answer.content, answer.sources)

            response = answer.to_dict()
            response["session_id"] = session_id
            return jsonify(response)

        except Exception as e:
            logger.error("chat_endpoint_error", bot_id=bot_id, error=str(e), error_type=type(e).__name__)
            return jsonify({
                "error": "An error occurred processing your request. Please try again."
            }), 500

    @app.route("/api/bots/<bot_id>/collection", methods=["GET"])
    async def collection(bot_id: str):
        """Collection status; ``?debug=1`` adds document states and samples."""
        svc = _services()
        try:
            if request.args.get("debug"):
                return jsonify(svc.embeddings.debug_bot(bot_id))
            return jsonify(svc.embeddings.collection_status(bot_id))
        except Exception as e:
            logger.error("collection_status_error", bot_id=bot_id, error=str(e))
            return jsonify({"error": "Failed to get collection status"}), 500

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - database reachable and queue readable."""
        checks = {"status": "healthy", "database": False}
        try:
            checks["jobs"] = _services().queue.metrics()
            checks["database"] = True
            return jsonify(checks), 200
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            checks["status"] = "unhealthy"
            checks["error"] = str(e)
            return jsonify(checks), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - run with hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
