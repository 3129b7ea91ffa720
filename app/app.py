"""
ManifestVault - Application Factory e Inicialização
"""
import os
import sys
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import flask.cli
flask.cli.show_server_banner = lambda *args: None

# Core Flask imports
from flask import Flask, Blueprint
import structlog

# Local imports
from constants import *
from settings import load_settings, verify_settings
from utils import ColoredFormatter, FilterRemoveDateFromWerkzeugLogs
from exceptions import ValidationException, register_exception_handlers
from rest_api import init_rest_api, EXTENSION_KEY
from metrics import init_metrics
from key_table import JsonKeyValueStore, KeyTable, KeyResolver, BuildVersionLedger
from version_store import DirectoryBackend, GitHubBranchBackend, VersionStoreClient, TitleLocks
from catalog import CatalogClient
from assembler import BundleAssembler
from ingest import IngestionService
from reconciler import Reconciler
from dlc_analyzer import DLCAnalyzer

# Jobs
from jobs.scheduler import JobScheduler

# Logging configuration
formatter = ColoredFormatter(
    '[%(asctime)s.%(msecs)03d] %(levelname)s (%(module)s) %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(formatter)

logging.basicConfig(
    level=logging.INFO,
    handlers=[handler]
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if os.environ.get('LOG_FORMAT') == 'json' else structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger('main')

# Apply filter to hide date from http access logs
logging.getLogger('werkzeug').addFilter(FilterRemoveDateFromWerkzeugLogs())


@dataclass
class Services:
    settings: Dict[str, Any]
    key_table: KeyTable
    build_versions: BuildVersionLedger
    store_client: VersionStoreClient
    catalog: Any
    assembler: BundleAssembler
    ingest: IngestionService
    reconciler: Reconciler
    dlc_analyzer: DLCAnalyzer
    scheduler: Optional[JobScheduler] = None


def build_store_backend(store_settings):
    success, errors = verify_settings('store', store_settings)
    if not success:
        raise ValidationException('; '.join(e['error'] for e in errors))

    if store_settings['backend'] == 'github':
        logger.info(f"Using GitHub store {store_settings['owner']}/{store_settings['repo']}")
        return GitHubBranchBackend(
            owner=store_settings['owner'],
            repo=store_settings['repo'],
            token=store_settings['token'],
            default_branch=store_settings.get('default_branch') or STORE_DEFAULT_BRANCH,
        )
    logger.info(f"Using directory store at {store_settings['path']}")
    return DirectoryBackend(store_settings['path'])


def build_services(settings, backend=None, catalog=None) -> Services:
    """Wire every service from settings; `backend` and `catalog` may be injected"""
    keys = settings['keys']
    key_table = KeyTable(JsonKeyValueStore(keys['path']))
    build_versions = BuildVersionLedger(JsonKeyValueStore(keys['build_versions_path']))

    store_client = VersionStoreClient(backend or build_store_backend(settings['store']), TitleLocks())
    catalog = catalog or CatalogClient.from_settings(settings)

    assembler = BundleAssembler(KeyResolver(key_table), catalog=catalog)
    reconciliation = settings['reconciliation']
    return Services(
        settings=settings,
        key_table=key_table,
        build_versions=build_versions,
        store_client=store_client,
        catalog=catalog,
        assembler=assembler,
        ingest=IngestionService(assembler, store_client, build_versions, key_table=key_table),
        reconciler=Reconciler(store_client, catalog, assembler,
                              on_demand_timeout=float(reconciliation['on_demand_timeout'])),
        dlc_analyzer=DLCAnalyzer(catalog, store_client, timeout=float(settings['dlc']['timeout'])),
    )


def init_internal(services):
    """Start the reconciliation scheduler when enabled"""
    reconciliation = services.settings['reconciliation']
    if not reconciliation.get('enabled', True):
        logger.info('Scheduled reconciliation disabled')
        return None

    job_scheduler = JobScheduler()
    job_scheduler.init_app(
        services.reconciler,
        interval_hours=float(reconciliation['interval_hours']),
        initial_delay_minutes=float(reconciliation['initial_delay_minutes']),
    )
    return job_scheduler


def create_app(settings=None, services=None, start_scheduler=True):
    """Application factory"""
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = 512 * 1024 * 1024

    settings = settings or load_settings()
    services = services or build_services(settings)
    if start_scheduler and services.scheduler is None:
        services.scheduler = init_internal(services)
    app.extensions[EXTENSION_KEY] = services

    # Register exception handlers
    register_exception_handlers(app)

    # Initialize REST API
    api_bp = Blueprint('api', __name__, url_prefix='/api')
    init_rest_api(api_bp)
    app.register_blueprint(api_bp)

    # Initialize metrics
    init_metrics(app)

    logger.info(f'ManifestVault {BUILD_VERSION} initialized')
    return app


if __name__ == '__main__':
    app = create_app()
    logger.info(f'Build Version: {BUILD_VERSION}')
    logger.info('Starting server on port 8465...')
    app.run(debug=False, use_reloader=False, host="0.0.0.0", port=int(os.environ.get('PORT', 8465)))
