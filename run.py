#!/usr/bin/env python3
"""
QuoteFlow Application Entry Point
"""
import os
from quoteflow import create_app, socketio

# Get configuration from environment
config_name = os.getenv('FLASK_CONFIG', 'development')

# Create application
app = create_app(config_name)

if __name__ == '__main__':
    socketio.run(
        app,
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5001)),
        debug=False,
        use_reloader=False,
        allow_unsafe_werkzeug=True
    )
