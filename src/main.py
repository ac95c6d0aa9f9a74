"""Main application entry point for SSHCode."""

import sys
from pathlib import Path

import webview

from .api import SSHCodeAPI
from .config import Config
from .logger import Logger

FALLBACK_HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>SSHCode</title>
    <style>
        body {
            font-family: Arial, sans-serif;
            text-align: center;
            padding: 50px;
            background: #1a1a1a;
            color: #fff;
        }
    </style>
</head>
<body>
    <h1>SSHCode</h1>
    <p>UI bundle not found. Build the frontend into the ui/ directory.</p>
</body>
</html>
"""


def load_html_template() -> str:
    """Load the bundled UI, or a placeholder page if it is missing."""
    template_path = Path(__file__).parent / "ui" / "index.html"
    if not template_path.exists():
        return FALLBACK_HTML
    try:
        return template_path.read_text(encoding='utf-8')
    except OSError as e:
        print(f"Error loading template: {e}")
        return f"<html><body><h1>Error loading template: {e}</h1></body></html>"


def main():
    """Main application entry point."""
    config = Config()

    if not config.ensure_config_dir():
        sys.exit(1)

    Logger(config.log_file)
    logger = Logger.get_logger(__name__)
    logger.info("=== SSHCode Starting ===")
    logger.info(f"Config directory: {config.config_dir}")

    try:
        api = SSHCodeAPI(config)
    except Exception as e:
        logger.error(f"Failed to create API instance: {e}")
        sys.exit(1)

    try:
        window = webview.create_window(
            title=config.get_app_title(),
            html=load_html_template(),
            js_api=api,
            width=config.window_width,
            height=config.window_height,
            min_size=(config.window_min_width, config.window_min_height)
        )
        api.set_window(window)
        logger.info("WebView window created")

        window.events.closed += api.cleanup
        webview.start(debug=False)
    except Exception as e:
        logger.error(f"Error starting application: {e}")
        sys.exit(1)
    finally:
        api.cleanup()
        logger.info("=== SSHCode Shutdown ===")


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
