#!/usr/bin/env python3
"""
SlabDesk Web App
HTTP handlers for PSA certification lookups, grading-order tracking and
eBay snipe bids. The handlers are glue: each one opens a store for the
request, builds the component it needs from the shared clients, and maps
errors onto JSON responses.
"""

from flask import Flask, g, jsonify, redirect, request
import logging
from typing import Optional
from werkzeug.exceptions import HTTPException

from slabdesk.config import Settings, load_env
from slabdesk.errors import InvalidStateError, NotFoundError, UpstreamError
from slabdesk.logging_setup import configure_logging
from slabdesk.record_store import RecordStore, connect_record_store
from slabdesk.services import Services, build_services

logger = logging.getLogger(__name__)


def _error(message: str, code: int, **extra):
    body = {'error': message}
    body.update(extra)
    return jsonify(body), code


def create_app(services: Optional[Services] = None) -> Flask:
    """Build the app. Tests pass their own Services with fake clients."""
    if services is None:
        settings = Settings.from_env(load_env())
        configure_logging(settings.log_level)
        services = build_services(settings)

    app = Flask(__name__)
    app.extensions['slabdesk'] = services

    def get_store() -> RecordStore:
        if 'store' not in g:
            g.store = connect_record_store(services.settings.db_path)
        return g.store

    @app.teardown_appcontext
    def close_store(exc):
        store = g.pop('store', None)
        if store is not None:
            store.close()

    def current_user_id() -> Optional[str]:
        # Set by the auth proxy in front of the app
        return request.headers.get('X-User-Id') or None

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(InvalidStateError)
    def handle_invalid_state(e):
        return _error(str(e), 409, status=e.status)

    @app.errorhandler(UpstreamError)
    def handle_upstream(e):
        logger.error("[API] Upstream failure: %s", e)
        return _error(str(e), 502)

    @app.errorhandler(ValueError)
    def handle_bad_value(e):
        return _error(str(e), 400)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("[API] Unhandled error: %s", e)
        return _error('Internal server error', 500)

    @app.route('/api/psa/cert', methods=['GET'])
    def psa_cert():
        """Cached PSA certification lookup"""
        cert_number = request.args.get('certNumber', '').strip()
        include_population = request.args.get('includePopulation') == 'true'

        if not cert_number:
            return _error('Missing required parameter: certNumber', 400)

        result = services.certification_cache(get_store()).get_certification(cert_number, include_population)
        return jsonify(result.to_dict())

    @app.route('/api/psa/order', methods=['GET'])
    def psa_order():
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        order_number = request.args.get('orderNumber', '').strip()
        if not order_number:
            return _error('Missing required parameter: orderNumber', 400)

        order = services.order_tracker(get_store()).get_order(user_id, order_number)
        return jsonify({'data': order})

    @app.route('/api/psa/order', methods=['POST'])
    def track_psa_order():
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return _error('Request body must be a JSON object', 400)
        order_number = str(data.get('orderNumber', '')).strip()
        if not order_number:
            return _error('Missing required parameter: orderNumber', 400)

        order = services.order_tracker(get_store()).track_order(user_id, order_number)
        return jsonify({'data': order}), 201

    @app.route('/api/snipes', methods=['POST'])
    def create_snipe():
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return _error('Request body must be a JSON object', 400)
        if not data.get('itemId') or data.get('maxBid') is None:
            return _error('Missing required parameters: itemId, maxBid', 400)

        snipe = services.snipe_lifecycle(get_store()).create_snipe(
            user_id,
            str(data['itemId']),
            data['maxBid'],
            scheduled=bool(data.get('scheduled', False)),
            item_title=data.get('itemTitle'),
            current_bid=data.get('currentBid'),
            bid_strategy=data.get('bidStrategy', 'last'),
            end_time=data.get('endTime'),
        )
        return jsonify({'data': snipe.to_dict()}), 201

    @app.route('/api/snipes', methods=['GET'])
    def list_snipes():
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        snipes = services.snipe_lifecycle(get_store()).list_snipes(user_id, request.args.get('status'))
        return jsonify({'data': [snipe.to_dict() for snipe in snipes]})

    @app.route('/api/snipes/<snipe_id>', methods=['GET'])
    def get_snipe(snipe_id):
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        snipe = services.snipe_lifecycle(get_store()).get_snipe(snipe_id, user_id)
        return jsonify({'data': snipe.to_dict()})

    @app.route('/api/snipes/<snipe_id>/cancel', methods=['POST'])
    def cancel_snipe(snipe_id):
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        snipe = services.snipe_lifecycle(get_store()).cancel(snipe_id, user_id)
        return jsonify({'data': snipe.to_dict()})

    @app.route('/api/ebay/bid', methods=['POST'])
    def place_bid():
        """Place the bid for a snipe now"""
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)

        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return _error('Request body must be a JSON object', 400)
        snipe_id = data.get('snipeId')
        if not snipe_id:
            return _error('Missing required parameter: snipeId', 400)

        snipe = services.snipe_lifecycle(get_store()).place_bid(snipe_id, user_id)
        if snipe.status == 'error':
            return _error('Failed to place bid', 502, details=snipe.error_message, data=snipe.to_dict())

        return jsonify({
            'success': True,
            'message': 'Bid placed successfully',
            'data': snipe.to_dict(),
        })

    @app.route('/api/auth/ebay/url', methods=['GET'])
    def ebay_auth_url():
        user_id = current_user_id()
        if not user_id:
            return _error('Unauthorized', 401)
        return jsonify({'url': services.oauth_client.get_authorization_url(state=user_id)})

    @app.route('/api/auth/ebay/callback', methods=['GET'])
    def ebay_callback():
        """eBay redirects here with ?code=...&state=<user id>"""
        code = request.args.get('code')
        user_id = request.args.get('state')
        if not code or not user_id:
            return _error('Missing code or state', 400)

        try:
            services.token_provider(get_store()).connect_user(user_id, code)
        except UpstreamError as e:
            logger.error("[eBay] OAuth callback failed for user %s: %s", user_id, e)
            return redirect('/ebay-integration/error')
        return redirect('/ebay-integration/success')

    return app


if __name__ == '__main__':
    app = create_app()
    print("=" * 70)
    print("SlabDesk Web App")
    print("=" * 70)
    print("Starting server...")
    print("Open your browser and go to: http://localhost:5000")
    print("=" * 70)
    app.run(debug=True, host='0.0.0.0', port=5000)
