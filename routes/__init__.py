# Routes package - registers all blueprints with the Flask app

def register_blueprints(app):
    """Register all route blueprints with the Flask app."""
    from .tones import tones_bp

    app.register_blueprint(tones_bp)  # Live tone tracking and symbol decoding
