"""
Metrics routes - Prometheus scrape endpoint.
"""

import logging

from flask import Blueprint, Response, current_app


logger = logging.getLogger(__name__)

bp = Blueprint('metrics', __name__)


@bp.route('/metrics', methods=['GET'])
def get_metrics():
    """
    Render all metrics in the Prometheus text format.

    Returns:
        text/plain exposition, or 500 if the registry cannot be rendered
    """
    metrics = current_app.config['METRICS']

    try:
        body = metrics.gather()
    except Exception as e:
        logger.error(f"Failed to gather metrics: {e}")
        return Response('Failed to gather metrics', status=500, mimetype='text/plain')

    return Response(body, status=200, headers={'Content-Type': metrics.content_type})
