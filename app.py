import logging
from pathlib import Path
from typing import Optional

from dateutil.parser import parse as dateutil_parse
from dotenv import load_dotenv
from flask import Flask, jsonify, request

from services.audit import compare_stores, orders_between
from services.commands import build_source, build_target, build_writer
from services.daily_stats import rebuild_daily_stats, verify_daily_stats
from services.duplicates import find_duplicates
from services.migration import UnknownCollectionError, get_mapping, migrate_collection
from services.source import SourceStoreError
from services.target import TargetStoreError
from settings import ConfigurationError, load_settings

# Load environment variables from .env file
load_dotenv()

app = Flask(__name__)
app.json.sort_keys = False


class BadRequest(ValueError):
    """Raised for malformed request parameters."""


def _get_settings():
    return load_settings()


def _parse_day(value: Optional[str], name: str, required: bool = False) -> Optional[str]:
    if value in (None, ''):
        if required:
            raise BadRequest(f"'{name}' is required")
        return None
    try:
        return dateutil_parse(str(value)).date().isoformat()
    except (TypeError, ValueError, OverflowError):
        raise BadRequest(f"'{name}' is not a valid date: {value}")


def _error(message: str, status: int):
    return jsonify({'status': 'error', 'error': message}), status


@app.errorhandler(BadRequest)
def handle_bad_request(exc):
    return _error(str(exc), 400)


@app.errorhandler(ConfigurationError)
def handle_configuration_error(exc):
    app.logger.error('Configuration error: %s', exc)
    return _error(str(exc), 400)


@app.errorhandler(SourceStoreError)
@app.errorhandler(TargetStoreError)
def handle_store_error(exc):
    app.logger.exception('Store call failed')
    return _error(str(exc), 502)


@app.route('/api/health', methods=['GET'])
def health():
    settings = _get_settings()
    return jsonify({'status': 'ok', 'target': settings.target_backend, 'timezone': settings.timezone_name})


@app.route('/api/migrate/<collection>', methods=['POST'])
def migrate(collection):
    try:
        mapping = get_mapping(collection)
    except UnknownCollectionError as exc:
        return _error(exc.args[0], 404)

    payload = request.get_json(silent=True) or {}
    export = payload.get('export')
    settings = _get_settings()
    source = build_source(settings, Path(export) if export else None)
    writer = build_writer(settings, build_target(settings))
    summary = migrate_collection(
        source,
        writer,
        mapping,
        batch_size=settings.page_size,
        start_after=payload.get('startAfter') or None,
    )
    return jsonify({'status': 'success' if summary.ok else 'partial', 'summary': summary.to_dict()})


@app.route('/api/stats/rebuild', methods=['POST'])
def rebuild_stats():
    payload = request.get_json(silent=True) or {}
    start = _parse_day(payload.get('start'), 'start')
    end = _parse_day(payload.get('end'), 'end')
    settings = _get_settings()
    store = build_target(settings)
    summary = rebuild_daily_stats(
        store,
        settings.timezone,
        start=start,
        end=end,
        writer=build_writer(settings, store),
        page_size=settings.page_size,
    )
    return jsonify({'status': 'success' if summary.ok else 'partial', 'summary': summary.to_dict()})


@app.route('/api/stats/verify', methods=['GET'])
def verify_stats():
    settings = _get_settings()
    drift = verify_daily_stats(build_target(settings), settings.timezone, page_size=settings.page_size)
    return jsonify({'status': 'success', 'consistent': not drift, 'drift': drift})


@app.route('/api/reports/duplicates', methods=['GET'])
def duplicates_report():
    start = _parse_day(request.args.get('start'), 'start')
    end = _parse_day(request.args.get('end'), 'end')
    include_canceled = request.args.get('include_canceled', '').lower() in {'1', 'true', 'yes'}
    settings = _get_settings()
    store = build_target(settings)
    orders = orders_between(
        store.iter_rows('orders', order_by='id', page_size=settings.page_size),
        settings.timezone,
        start,
        end,
    )
    candidates = find_duplicates(orders, include_canceled=include_canceled)
    return jsonify({'status': 'success', 'candidates': [candidate.to_dict() for candidate in candidates]})


@app.route('/api/reports/audit', methods=['GET'])
def audit_report():
    start = _parse_day(request.args.get('start'), 'start', required=True)
    end = _parse_day(request.args.get('end'), 'end', required=True)
    if start > end:
        raise BadRequest("'start' must not be after 'end'")
    export = request.args.get('export')
    settings = _get_settings()
    report = compare_stores(
        build_source(settings, Path(export) if export else None),
        build_target(settings),
        settings.timezone,
        start,
        end,
        page_size=settings.page_size,
    )
    return jsonify({'status': 'success', 'report': report.to_dict()})


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    app.run(host='127.0.0.1', port=5002, debug=False)
