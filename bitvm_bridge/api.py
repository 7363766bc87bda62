"""
BitVM Bridge SDK - Status API

Read-mostly REST API over one BridgeClient.

Endpoints:
  GET  /health                         - Server status
  GET  /health/chain                   - Chain backend reachability and tip
  GET  /api/graphs/<id>                - Graph definition and dispute status
  GET  /api/graphs/<id>/next           - Next broadcastable transaction
  GET  /api/graphs/<id>/signing        - Per-input signing progress
  POST /api/graphs/<id>/l2-confirm     - Record the (mock) L2 withdrawal
"""

import logging
import time

from flask import Flask, jsonify, request
from flask_cors import CORS

from .errors import BridgeError, ChainError, UnknownGraph, UnknownTransaction


log = logging.getLogger(__name__)


def _error_status(error: BridgeError) -> int:
    if isinstance(error, (UnknownGraph, UnknownTransaction)):
        return 404
    if isinstance(error, ChainError) and error.retryable:
        return 503
    return 400


def create_app(client) -> Flask:
    """
    Build the Flask app.

    Usage:
        app = create_app(BridgeClient(config))
        app.run(host=config.api_host, port=config.api_port)
    """
    app = Flask(__name__)
    CORS(app)  # Allow cross-origin for dashboards

    @app.errorhandler(BridgeError)
    def handle_bridge_error(error: BridgeError):
        return jsonify(error.to_dict()), _error_status(error)

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.route('/health')
    def health():
        """Basic health check"""
        return jsonify({'ok': True, 'network': client.config.network, 'timestamp': int(time.time())})

    @app.route('/health/chain')
    def health_chain():
        """Check the Bitcoin backend"""
        try:
            height = client.chain_state().height
        except ChainError as e:
            return jsonify({'ok': False, 'error': e.message}), 503
        return jsonify({'ok': True, 'height': height})

    # =========================================================================
    # GRAPHS
    # =========================================================================

    @app.route('/api/graphs/<graph_id>')
    def api_graph(graph_id):
        graph = client.get_graph(graph_id)
        data = graph.describe()
        data['status'] = client.status(graph_id)
        return jsonify(data)

    @app.route('/api/graphs/<graph_id>/next')
    def api_graph_next(graph_id):
        client.sync(graph_id)
        chain_state = client.chain_state()
        next_tx = client.dsm.next_eligible(graph_id, chain_state)
        return jsonify({
            'graph_id': graph_id,
            'height': chain_state.height,
            'state': client.dsm.state(graph_id).value,
            'next': next_tx.value if next_tx else None,
        })

    @app.route('/api/graphs/<graph_id>/signing')
    def api_graph_signing(graph_id):
        return jsonify(client.coordinator.status(graph_id))

    @app.route('/api/graphs/<graph_id>/l2-confirm', methods=['POST'])
    def api_l2_confirm(graph_id):
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'No data provided'}), 400
        l2_tx_hash = data.get('l2_tx_hash')
        if not l2_tx_hash:
            return jsonify({'error': 'Missing l2_tx_hash'}), 400
        record = client.confirm_l2_withdrawal(graph_id, l2_tx_hash, data.get('sender'))
        log.info(f"API: L2 confirmation for {graph_id[:16]}")
        return jsonify({'success': True, 'record': record})

    return app
