#!/usr/bin/env python3
"""Development server runner"""
import os
from cloudkeeper import create_app

if __name__ == '__main__':
    app = create_app('development')

    # Bind to localhost unless told otherwise; the API is open without API_TOKEN
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 5000))
    app.run(host=host, port=port, debug=True)
