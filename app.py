#!/usr/bin/env python3
"""
Flask Web Application for Canvas Random Section Enrollment
HTTP trigger for on-demand (single course) and scheduled (batch) runs.
"""

import os
import sys
import traceback
from typing import Optional

from flask import Flask, request, jsonify

from canvas_api import CanvasAPIError
from random_sections import RandomSectionService, WorkItem, build_client, parse_batch, parse_flag

app = Flask(__name__)

# Built lazily so the app can start before the environment is complete
service: Optional[RandomSectionService] = None


def init_app() -> bool:
    """Initialize the Canvas client and service."""
    global service
    if service is not None:
        return True
    try:
        service = RandomSectionService(build_client())
        return True
    except Exception as e:
        app.logger.error(f"Failed to initialize Canvas config: {e}")
        return False


def get_error_message(e: Exception) -> str:
    """Extract user-friendly error message from exceptions."""
    if isinstance(e, CanvasAPIError):
        return f"Canvas API Error: {e.message}"
    return str(e)


def text_response(body: str, status: int = 200):
    return body + "\n", status, {'Content-Type': 'text/plain; charset=utf-8'}


def _dry_run_requested() -> bool:
    return parse_flag(request.args.get('dry_run', ''))


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'configured': init_app()})


@app.route('/auto-random-section-enrollment', methods=['POST'])
def auto_random_section_enrollment():
    """
    Place one course's students into its ad hoc sections.

    JSON body: {"courseId": 123, "sectionNames": ["A", "B"]}
    Form body: sectionid=456&sectionnames=A&sectionnames=B
    """
    if not init_app():
        return text_response("Failed to initialize Canvas configuration. Check the environment variables.", 500)

    if request.is_json:
        payload = request.get_json(silent=True) or {}
    else:
        payload = {
            'courseId': request.form.get('courseId') or request.form.get('course_id'),
            'sectionId': request.form.get('sectionId') or request.form.get('sectionid'),
            'sectionNames': request.form.getlist('sectionNames') or request.form.getlist('sectionnames')
        }

    try:
        item = WorkItem.from_dict(payload, dry_run=_dry_run_requested())
    except ValueError as e:
        return text_response(f"Invalid request: {e}", 400)

    try:
        return text_response(service.run(item))
    except Exception as e:
        app.logger.error(f"Error during random section enrollment: {traceback.format_exc()}")
        return text_response(f"Error: {get_error_message(e)}", 500)


@app.route('/auto-random-section-enrollment/batch', methods=['POST'])
def auto_random_section_enrollment_batch():
    """Run every work item of a {"data": [...]} payload, one status line each."""
    if not init_app():
        return text_response("Failed to initialize Canvas configuration. Check the environment variables.", 500)

    try:
        raw_items = parse_batch(request.get_json(silent=True))
    except ValueError as e:
        return text_response(f"Invalid request: {e}", 400)

    try:
        return text_response(service.run_batch(raw_items, dry_run=_dry_run_requested()))
    except Exception as e:
        app.logger.error(f"Error during batch enrollment: {traceback.format_exc()}")
        return text_response(f"Error: {get_error_message(e)}", 500)


@app.errorhandler(404)
def not_found_error(error):
    return text_response("Not found", 404)


@app.errorhandler(500)
def internal_error(error):
    app.logger.error(f"Internal server error: {traceback.format_exc()}")
    return text_response("Internal server error", 500)


if __name__ == '__main__':
    # Check for required environment variables
    if not (os.getenv('CANVAS_API_TOKEN') or os.getenv('API_TOKEN')) or \
            not (os.getenv('CANVAS_BASE_URL') or os.getenv('API_ROOT')):
        print("Missing required environment variables:")
        print("   CANVAS_API_TOKEN - Your Canvas API token")
        print("   CANVAS_BASE_URL - Your Canvas instance URL")
        sys.exit(1)

    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 5000))

    print(f"Starting Flask application on port {port}")
    print(f"Debug mode: {debug_mode}")

    app.run(host='0.0.0.0', port=port, debug=debug_mode)
