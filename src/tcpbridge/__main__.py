"""
Serves the HTTP to TCP gateway.

    python -m tcpbridge --port 3001 --timeout 5000
"""
import argparse
import logging

import uvicorn

from tcpbridge.config.config import load_settings
from tcpbridge.gateway import create_app

logger = logging.getLogger(__name__)


def parse_args(args=None):
    parser = argparse.ArgumentParser(prog='tcpbridge', description='Sends HTTP requests as commands to TCP peers.')
    parser.add_argument('--host', dest='listen_host', help='address to listen on')
    parser.add_argument('--port', dest='listen_port', type=int, help='port to listen on')
    parser.add_argument('--timeout', type=int, help='default command timeout in milliseconds')
    parser.add_argument('--config-dir', help='directory containing tcpbridge.cfg')
    parser.add_argument('--log-level', choices=('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'))
    return parser.parse_args(args)


def main(args=None):
    options = parse_args(args)
    settings = load_settings(options.config_dir, listen_host=options.listen_host, listen_port=options.listen_port,
                             timeout=options.timeout, log_level=options.log_level)
    logging.basicConfig(level=settings.log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    logger.info("starting gateway with %s" % settings)
    uvicorn.run(create_app(settings), host=settings.listen_host, port=settings.listen_port,
                log_level=settings.log_level.lower())


if __name__ == '__main__':  # pragma no cover
    main()
