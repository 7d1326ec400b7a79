"""
Flask web application for pill counting.
Accepts an uploaded photo, runs the segmentation pipeline and returns the
count, bounding boxes and links to the annotated images as JSON.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from flask import Flask, jsonify, request, send_file
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from image_processing import (
    ALLOWED_EXTENSIONS, allowed_file, create_overlay, draw_boundaries, draw_boxes, load_image, save_image,
)
from pillseg import PipelineConfig, run_pill_count
from pillseg.config import ChromaMode, LuminanceMode
from presets import DEFAULT_PRESET, PRESETS, get_preset

logger = logging.getLogger(__name__)

# Flask app configuration
app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024  # 10MB max file size
app.config['UPLOAD_FOLDER'] = Path('static/uploads')
app.config['RESULTS_FOLDER'] = Path('static/results')

COUNT_PARAMS = ('lum_mode', 'chroma_mode', 'fg_percentile', 'min_area')


def upload_folder() -> Path:
    return Path(app.config['UPLOAD_FOLDER'])


def results_folder() -> Path:
    return Path(app.config['RESULTS_FOLDER'])


def create_directories() -> None:
    """Create necessary directories if they don't exist."""
    upload_folder().mkdir(parents=True, exist_ok=True)
    results_folder().mkdir(parents=True, exist_ok=True)


def save_job_metadata(job_id: str, metadata: Dict[str, Any]) -> None:
    """Save job metadata to JSON file."""
    metadata_path = results_folder() / f"{job_id}.json"
    with open(metadata_path, 'w', encoding='utf-8') as f:
        json.dump(metadata, f, indent=2, ensure_ascii=False)


def load_job_metadata(job_id: str) -> Optional[Dict[str, Any]]:
    """Load job metadata from JSON file."""
    metadata_path = results_folder() / f"{secure_filename(job_id)}.json"

    if not metadata_path.exists():
        return None

    try:
        with open(metadata_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError):
        return None


def validate_file(file: Optional[FileStorage]) -> Tuple[bool, str]:
    """Validate uploaded file."""
    if not file or not file.filename:
        return False, "No file selected."

    if not allowed_file(file.filename):
        return False, f"Unsupported file type. Accepted: {', '.join(sorted(ALLOWED_EXTENSIONS))}"

    return True, ""


def build_config(form: Dict[str, str], image) -> PipelineConfig:
    """Preset from the form (default shadowed) with any explicit overrides applied."""
    base = get_preset(form.get('preset') or DEFAULT_PRESET, image)
    return PipelineConfig.from_params({key: form.get(key) for key in COUNT_PARAMS}, base=base)


def error_response(message: str, status: int):
    return jsonify({'error': message}), status


@app.route('/')
def index():
    """Describe the service and the accepted options."""
    return jsonify({
        'service': 'pill-counter',
        'endpoints': {
            'POST /count': 'multipart upload, field "image"',
            'GET /results/<job_id>': 'stored job metadata',
            'GET /download/<filename>': 'annotated result image',
        },
        'options': {
            'preset': ['auto', *PRESETS],
            'lum_mode': [m.value for m in LuminanceMode],
            'chroma_mode': [m.value for m in ChromaMode],
            'fg_percentile': 'float in (0, 1)',
            'min_area': 'int, pixels',
        },
        'allowed_extensions': sorted(ALLOWED_EXTENSIONS),
    })


@app.route('/count', methods=['POST'])
def count():
    """Handle a pill counting request."""
    file = request.files.get('image')
    is_valid, error_msg = validate_file(file)
    if not is_valid:
        return error_response(error_msg, 400)

    job_id = uuid4().hex
    file_extension = Path(secure_filename(file.filename)).suffix.lower()

    create_directories()
    input_path = upload_folder() / f"{job_id}{file_extension}"
    file.save(str(input_path))

    try:
        image = load_image(input_path)
        config = build_config(request.form.to_dict(), image)
        result = run_pill_count(image, config)
    except ValueError as e:
        # InvalidInputError is a ValueError as well
        logger.warning("Job %s rejected: %s", job_id, e)
        if input_path.exists():
            input_path.unlink()
        return error_response(str(e), 400)

    boxed_name = f"{job_id}_boxed.png"
    overlay_name = f"{job_id}_overlay.png"
    mask_name = f"{job_id}_mask.png"
    boundaries_name = f"{job_id}_boundaries.png"
    save_image(results_folder() / boxed_name, draw_boxes(image, result.boxes))
    save_image(results_folder() / overlay_name, create_overlay(image, result.watershed.seg_mask))
    save_image(results_folder() / mask_name, result.watershed.seg_mask)
    save_image(results_folder() / boundaries_name, draw_boundaries(image, result.watershed.markers))

    metadata = {
        'job_id': job_id,
        'filename': file.filename,
        'count': result.count,
        'boxes': [list(box) for box in result.boxes],
        'config': result.config.as_dict(),
        'stats': result.stats,
        'files': {
            'boxed': boxed_name,
            'overlay': overlay_name,
            'mask': mask_name,
            'boundaries': boundaries_name,
        },
    }
    save_job_metadata(job_id, metadata)
    logger.info("Job %s: %d objects", job_id, result.count)
    return jsonify(metadata)


@app.route('/results/<job_id>')
def results(job_id: str):
    """Return stored job metadata."""
    metadata = load_job_metadata(job_id)
    if not metadata:
        return error_response('Result not found.', 404)
    return jsonify(metadata)


@app.route('/download/<filename>')
def download_file(filename: str):
    """Download result file."""
    # Clean filename to prevent path traversal
    clean_filename = secure_filename(filename)
    file_path = results_folder() / clean_filename

    if not clean_filename or not file_path.is_file():
        return error_response('File not found.', 404)

    return send_file(str(file_path.resolve()), as_attachment=True, download_name=clean_filename)


@app.errorhandler(413)
def too_large(e):
    """Handle file too large error."""
    return error_response('File too large. Maximum size is 10MB.', 413)


@app.errorhandler(404)
def not_found(e):
    """Handle 404 errors."""
    return error_response('Not found.', 404)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_directories()
    app.run(host="0.0.0.0", port=5000, debug=True)
