#!/usr/bin/env python3
"""Development server runner"""
import os
from gfskeeper import create_app
from gfskeeper.scheduler import start_background_scheduler

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # Only the reloader child runs scheduled jobs
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        start_background_scheduler(app)

    # Run development server
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=True)
