"""
HRMS QR Check-in Service - Main Application

Entry point for the Flask service that issues and redeems QR codes for
employee check-in, location check-in and document access.

Run with:
    FLASK_ENV=development python app.py
"""

import os

from hrms_qr.web import create_app

app = create_app(os.environ.get('FLASK_ENV'))

if __name__ == '__main__':
    app.run(debug=app.config['DEBUG'], host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
