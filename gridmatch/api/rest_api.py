"""
REST API for the energy marketplace.

HTTP endpoints for posting offers and requests, triggering matching
passes, and reading trades, settlement receipts, the ledger and wallets.
Callers identify themselves with the X-User-Id header.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import Flask, request, jsonify
from flask_cors import CORS

from ..config.settings import Settings, get_settings
from ..core.errors import (
    ForbiddenError,
    MarketError,
    MatchingInvariantError,
    OrderNotFoundError,
    OrderStateError,
    OrderValidationError,
    SettlementError,
)
from ..core.marketplace import Marketplace, create_marketplace
from ..core.order import start_of_week
from ..core.order_book import offer_priority, request_priority
from ..core.order_types import EventType
from ..core.reconciliation import reconcile
from .validators import (
    validate_limit,
    validate_meter_reading_request,
    validate_offer_request,
    validate_period,
    validate_region,
    validate_request_request,
    validate_cents,
    validate_status,
    validate_surplus_request,
    validate_user_id,
)

logger = logging.getLogger(__name__)

LEDGER_EVENT_TYPES = (
    EventType.PAYMENT_DEBIT,
    EventType.PAYMENT_CREDIT,
    EventType.CHAIN_RECEIPT,
    EventType.CHAIN_RECEIPT_MOCK,
    EventType.CHAIN_ERROR,
    EventType.SURPLUS_ENTRY,
    EventType.METER_READING,
    EventType.PRICE_UPDATE,
)


class ApiError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(marketplace: Optional[Marketplace] = None, settings: Optional[Settings] = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        marketplace: Marketplace to serve (built from settings if omitted)
        settings: Configuration (global settings if omitted)

    Returns:
        Configured Flask application
    """
    settings = settings or get_settings()
    marketplace = marketplace or create_marketplace(settings)

    app = Flask(__name__)
    if settings.enable_cors:
        CORS(app, origins=settings.cors_origins)

    app.extensions["marketplace"] = marketplace
    register_error_handlers(app)
    register_routes(app, marketplace, settings)

    logger.info("REST API initialized")
    return app


def register_error_handlers(app: Flask) -> None:
    """Map domain errors to HTTP responses."""

    @app.errorhandler(ApiError)
    def api_error(error: ApiError):
        return jsonify({'error': error.message}), error.status

    @app.errorhandler(OrderValidationError)
    @app.errorhandler(OrderStateError)
    def bad_request(error: MarketError):
        return jsonify({'error': str(error)}), 400

    @app.errorhandler(ForbiddenError)
    def forbidden(error: ForbiddenError):
        return jsonify({'error': str(error)}), 403

    @app.errorhandler(OrderNotFoundError)
    def order_not_found(error: OrderNotFoundError):
        return jsonify({'error': str(error)}), 404

    @app.errorhandler(SettlementError)
    def settlement_failed(error: SettlementError):
        logger.error(f"Settlement error: {str(error)}")
        body = {'error': str(error), 'trade_id': error.trade_id}
        if error.summary is not None:
            body['executed_trades'] = error.summary.executed_trades
        return jsonify(body), 500

    @app.errorhandler(MatchingInvariantError)
    def invariant_violated(error: MatchingInvariantError):
        logger.critical(f"Matching invariant violated: {str(error)}")
        return jsonify({'error': f"Matching aborted: {str(error)}"}), 500

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {str(error)}")
        return jsonify({'error': 'Internal server error'}), 500


def register_routes(app: Flask, marketplace: Marketplace, settings: Settings) -> None:
    """Register all API routes."""

    engine = marketplace.engine

    def current_user() -> str:
        user_id = request.headers.get('X-User-Id')
        is_valid, error = validate_user_id(user_id)
        if not is_valid:
            raise ApiError(error, 401)
        return user_id

    def json_body() -> dict:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ApiError('Request body must be a JSON object')
        return data

    def region_arg(value: Optional[str]) -> str:
        if value is None:
            return settings.default_region
        is_valid, error = validate_region(value)
        if not is_valid:
            raise ApiError(error)
        return value

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'service': 'gridmatch',
            'timestamp': _now_iso(),
        })

    @app.route('/offers', methods=['GET'])
    def list_offers():
        """
        List offers, cheapest first.

        Query parameters:
        - region_id: Region (default region if omitted)
        - status: OPEN (default), FILLED or CANCELLED
        """
        region_id = region_arg(request.args.get('region_id'))
        is_valid, error, status = validate_status(request.args.get('status'))
        if not is_valid:
            raise ApiError(error)

        offers = marketplace.store.list_offers(region_id=region_id, status=status)
        offers.sort(key=offer_priority)
        return jsonify([o.to_dict() for o in offers]), 200

    @app.route('/offers', methods=['POST'])
    def post_offer():
        """
        Post a sell offer.

        Request body:
        {
            "price_cents_per_kwh": 18,
            "quantity_kwh": "3.5",
            "region_id": "region-1"
        }
        """
        user_id = current_user()
        is_valid, error, data = validate_offer_request(json_body())
        if not is_valid:
            raise ApiError(error)

        offer, summary = marketplace.post_offer(
            user_id, data['price_cents_per_kwh'], data['quantity_kwh'], data['region_id']
        )
        offer = marketplace.store.get_offer(offer.offer_id)
        return jsonify({
            'offer': offer.to_dict(),
            'match_summary': summary.to_dict() if summary else None,
        }), 201

    @app.route('/offers/<offer_id>/cancel', methods=['POST'])
    def cancel_offer(offer_id: str):
        user_id = current_user()
        offer = marketplace.cancel_offer(user_id, offer_id)
        return jsonify(offer.to_dict()), 200

    @app.route('/requests', methods=['GET'])
    def list_requests():
        """
        List requests, highest max price first.

        Query parameters:
        - region_id: Region (default region if omitted)
        - status: OPEN (default), FILLED or CANCELLED
        """
        region_id = region_arg(request.args.get('region_id'))
        is_valid, error, status = validate_status(request.args.get('status'))
        if not is_valid:
            raise ApiError(error)

        requests_ = marketplace.store.list_requests(region_id=region_id, status=status)
        requests_.sort(key=request_priority)
        return jsonify([r.to_dict() for r in requests_]), 200

    @app.route('/requests', methods=['POST'])
    def post_request():
        """
        Post a buy request.

        Request body:
        {
            "max_price_cents_per_kwh": 25,
            "quantity_kwh": "2",
            "region_id": "region-1"
        }
        """
        user_id = current_user()
        is_valid, error, data = validate_request_request(json_body())
        if not is_valid:
            raise ApiError(error)

        buy_request, summary = marketplace.post_request(
            user_id, data['max_price_cents_per_kwh'], data['quantity_kwh'], data['region_id']
        )
        buy_request = marketplace.store.get_request(buy_request.request_id)
        return jsonify({
            'request': buy_request.to_dict(),
            'match_summary': summary.to_dict() if summary else None,
        }), 201

    @app.route('/requests/<request_id>/cancel', methods=['POST'])
    def cancel_request(request_id: str):
        user_id = current_user()
        buy_request = marketplace.cancel_request(user_id, request_id)
        return jsonify(buy_request.to_dict()), 200

    @app.route('/match/run', methods=['POST'])
    def run_match():
        """Run a matching pass for a region (body or query region_id)."""
        current_user()
        region_id = region_arg(json_body().get('region_id') or request.args.get('region_id'))
        summary = marketplace.run_match(region_id)
        return jsonify(summary.to_dict()), 200

    @app.route('/trades', methods=['GET'])
    def list_trades():
        """
        List trades, newest first.

        Query parameters:
        - mine: "true" to only list trades of the caller
        - region_id: Optional region filter
        """
        user_id = current_user()
        mine = request.args.get('mine') == 'true'
        region_id = request.args.get('region_id')
        if region_id is not None:
            region_id = region_arg(region_id)

        trades = marketplace.store.list_trades(region_id=region_id, user_id=user_id if mine else None)
        return jsonify([t.to_dict() for t in trades]), 200

    @app.route('/settlement', methods=['GET'])
    def get_settlement():
        """Latest trades of a region with their receipts."""
        current_user()
        region_id = region_arg(request.args.get('region_id'))
        is_valid, error, limit = validate_limit(request.args.get('limit'), 20, 1, 50)
        if not is_valid:
            raise ApiError(error)
        return jsonify(engine.get_settlement(region_id, limit)), 200

    @app.route('/ledger', methods=['GET'])
    def get_ledger():
        """
        Event log entries relevant to settlement.

        Query parameters:
        - period: all (default), current or previous week
        - limit: 10..200, default 100
        """
        current_user()
        is_valid, error, limit = validate_limit(request.args.get('limit'), 100, 10, 200)
        if not is_valid:
            raise ApiError(error)
        is_valid, error, period = validate_period(request.args.get('period'))
        if not is_valid:
            raise ApiError(error)

        since = until = None
        week_start = start_of_week(datetime.now(timezone.utc))
        if period == 'current':
            since = week_start
        elif period == 'previous':
            since = week_start - timedelta(days=7)
            until = week_start

        entries = marketplace.event_log.query(
            types=LEDGER_EVENT_TYPES, since=since, until=until, limit=limit, newest_first=True
        )
        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'generated_at': _now_iso(),
        }), 200

    @app.route('/reconciliation', methods=['GET'])
    def get_reconciliation():
        """Reconciliation report over all trades (or one region's)."""
        current_user()
        region_id = request.args.get('region_id')
        if region_id is not None:
            region_id = region_arg(region_id)
        trades = marketplace.store.list_trades(region_id=region_id)
        report = reconcile(trades, marketplace.event_log, marketplace.ledger)
        return jsonify(report.to_dict()), 200

    @app.route('/wallet', methods=['GET'])
    def get_wallet():
        user_id = current_user()
        return jsonify(marketplace.ledger.get_wallet(user_id).to_dict()), 200

    @app.route('/wallet/topup', methods=['POST'])
    def top_up():
        """Request body: {"amount_cents": 5000}"""
        user_id = current_user()
        is_valid, error, amount = validate_cents(json_body().get('amount_cents'), 'amount_cents')
        if not is_valid:
            raise ApiError(error)
        marketplace.top_up(user_id, amount)
        return jsonify(marketplace.ledger.get_wallet(user_id).to_dict()), 200

    @app.route('/price', methods=['POST'])
    def set_price():
        """Request body: {"price_cents_per_kwh": 18}"""
        user_id = current_user()
        is_valid, error, price = validate_cents(json_body().get('price_cents_per_kwh'), 'price_cents_per_kwh')
        if not is_valid:
            raise ApiError(error)
        return jsonify(marketplace.set_price(user_id, price)), 200

    @app.route('/surplus', methods=['POST'])
    def record_surplus():
        """
        Record generation and local load; any surplus is offered.

        Request body:
        {
            "generated_kwh": "12.5",
            "local_load_kwh": "9"
        }
        """
        user_id = current_user()
        is_valid, error, data = validate_surplus_request(json_body())
        if not is_valid:
            raise ApiError(error)
        result = marketplace.record_surplus(
            user_id, data['generated_kwh'], data['local_load_kwh'], data['region_id']
        )
        return jsonify(result), 200

    @app.route('/meter-reading', methods=['POST'])
    def record_meter_reading():
        """
        Record consumption so far today; any shortfall is requested at the
        operator's current price.

        Request body:
        {
            "reading_kwh": "7.5",
            "notes": "evening peak"
        }
        """
        user_id = current_user()
        is_valid, error, data = validate_meter_reading_request(json_body())
        if not is_valid:
            raise ApiError(error)
        result = marketplace.record_meter_reading(
            user_id, data['reading_kwh'], notes=data['notes'], region_id=data['region_id']
        )
        return jsonify(result), 200

    @app.route('/weekly-balance', methods=['GET'])
    def weekly_balance():
        """Purchases, payments and amount still due for the current week."""
        user_id = current_user()
        return jsonify(marketplace.weekly_balance(user_id)), 200

    @app.route('/dashboard/operator', methods=['GET'])
    def operator_dashboard():
        user_id = current_user()
        region_id = region_arg(request.args.get('region_id'))
        return jsonify(marketplace.operator_summary(user_id, region_id)), 200

    @app.route('/dashboard/buyer', methods=['GET'])
    def buyer_dashboard():
        user_id = current_user()
        region_id = region_arg(request.args.get('region_id'))
        return jsonify(marketplace.buyer_summary(user_id, region_id)), 200

    @app.route('/statistics', methods=['GET'])
    def get_statistics():
        """Get engine statistics."""
        stats = engine.get_statistics()
        if settings.enable_performance_monitoring:
            stats['performance'] = engine.performance_monitor.get_summary()
        return jsonify(stats), 200

