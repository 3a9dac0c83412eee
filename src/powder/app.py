import asyncio
import logging
import os

from flask import Flask, request, jsonify
from flask_cors import CORS

from .config import Settings, setup_logging
from .implementations import IMPLEMENTATIONS, get_implementation
from .orchestrator import SnapshotService

logger = logging.getLogger(__name__)


def parse_timestamp(value):
    """Unix seconds from a JSON value; None when it is not a usable timestamp."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        return None
    return value


def create_app(service=None):
    app = Flask(__name__)
    # The results dashboard is served from another origin.
    CORS(app)
    app.config['SNAPSHOT_SERVICE'] = service

    def get_service():
        if app.config['SNAPSHOT_SERVICE'] is None:
            app.config['SNAPSHOT_SERVICE'] = SnapshotService()
        return app.config['SNAPSHOT_SERVICE']

    @app.route('/api/implementations', methods=['GET'])
    def list_implementations():
        return jsonify([implementation.to_dict() for implementation in IMPLEMENTATIONS])

    @app.route('/api/implementations/<implementation_id>', methods=['POST'])
    def run_implementation(implementation_id):
        implementation = get_implementation(implementation_id)
        if implementation is None:
            return jsonify({'error': f"Unknown implementation: {implementation_id}"}), 404

        body = request.get_json(silent=True) or {}
        timestamp = parse_timestamp(body.get('timestamp'))
        if timestamp is None:
            return jsonify({'error': 'A positive integer timestamp is required'}), 400
        use_cache = body.get('useCache', True) is not False

        logger.info(f"Running {implementation_id} for timestamp {timestamp} (useCache={use_cache})")
        result = asyncio.run(get_service().compute(timestamp, implementation_id, use_cache=use_cache))
        if not result.ok:
            return jsonify(result.to_response()), 500
        return jsonify(result.to_response())

    @app.route('/api/get-saved-results', methods=['GET'])
    def get_saved_results():
        return jsonify(get_service().saved_results())

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        service = app.config['SNAPSHOT_SERVICE']
        node_url = service.settings.node_url if service is not None else os.getenv('NODE_URL', '')
        return jsonify({'status': 'ok', 'node_url': node_url})

    return app


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    app = create_app(SnapshotService(settings))
    port = int(os.getenv('PORT', '5000'))
    logger.info(f"Starting Flask server with Ethereum node at: {settings.node_url}")
    app.run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
