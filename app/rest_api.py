from flask_restx import Api, Resource, fields, reqparse
from flask import current_app, send_file
from werkzeug.datastructures import FileStorage
import io
import logging

from api_responses import success_response, validation_error_response, not_found_response, ErrorCode
from archive import build_archive
from bundles import normalize_title_id
from exceptions import VaultException, http_status_for
from utils import format_size_py

logger = logging.getLogger('main')

EXTENSION_KEY = 'manifestvault'


def get_services():
    return current_app.extensions[EXTENSION_KEY]


def init_rest_api(app):
    api = Api(app, version='1.0', title='ManifestVault API',
        description='Depot bundle ingestion and reconciliation API',
        doc='/docs'
    )

    @api.errorhandler(VaultException)
    def handle_vault_exception(error):
        return error.to_dict(), http_status_for(error)

    # Namespaces
    ns_bundles = api.namespace('v1/bundles', description='Bundle ingestion')
    ns_keys = api.namespace('v1/keys', description='Depot key table')
    ns_titles = api.namespace('v1/titles', description='Stored titles')
    ns_system = api.namespace('v1/system', description='System operations')

    # Models
    depot_key_model = api.model('DepotKey', {
        'depot_id': fields.String(required=True, description='Depot ID'),
        'key': fields.String(required=True, description='Depot decryption key'),
    })

    upload_parser = reqparse.RequestParser()
    upload_parser.add_argument('archive', location='files', type=FileStorage, required=True,
                               help='ZIP archive with .lua and .manifest files')

    reconcile_parser = reqparse.RequestParser()
    reconcile_parser.add_argument('timeout', type=float, location='args', required=False)

    # Namespace Bundles
    @ns_bundles.route('/upload')
    class BundleUpload(Resource):
        @ns_bundles.doc('upload_archive')
        @ns_bundles.expect(upload_parser)
        def post(self):
            """Ingest a ZIP archive of scripts and manifest files"""
            args = upload_parser.parse_args()
            upload = args['archive']
            if not (upload.filename or '').lower().endswith('.zip'):
                return validation_error_response('archive', 'Please upload a ZIP file.')

            service = get_services().ingest
            report = service.ingest_archive(upload.read())
            data = report.to_dict()
            data['summary'] = service.summary(report)
            return success_response(data, message=f"{len(report.committed_titles)} title(s) committed")

    # Namespace Keys
    @ns_keys.route('')
    class DepotKeys(Resource):
        @ns_keys.doc('add_depot_key')
        @ns_keys.expect(depot_key_model, validate=True)
        def post(self):
            """Add or replace a depot key"""
            payload = api.payload or {}
            changed = get_services().ingest.add_depot_key(payload.get('depot_id'), payload.get('key'))
            depot_id = normalize_title_id(payload.get('depot_id'))
            message = 'Depot key added' if changed else 'Depot key already present'
            return success_response({'depot_id': depot_id, 'changed': changed}, message=message,
                                    status_code=201 if changed else 200)

    # Namespace Titles
    @ns_titles.route('')
    class TitleList(Resource):
        @ns_titles.doc('list_titles')
        def get(self):
            """List titles held by the version store"""
            titles = get_services().store_client.list_titles()
            return success_response({'titles': titles, 'total': len(titles)})

    @ns_titles.route('/<string:title_id>')
    @ns_titles.response(404, 'Title not found')
    @ns_titles.param('title_id', 'The title ID')
    class TitleInfo(Resource):
        @ns_titles.doc('get_title')
        def get(self, title_id):
            """Stored files and depot revisions of a title"""
            title_id = normalize_title_id(title_id)
            services = get_services()
            unit = services.store_client.read_stored_unit(title_id)
            if unit is None:
                return not_found_response('Title', title_id)
            return success_response({
                'title_id': title_id,
                'files': [
                    {'name': name, 'size': len(content), 'size_formatted': format_size_py(len(content))}
                    for name, content in sorted(unit.files.items())
                ],
                'revisions': unit.revisions,
                'unverified': sorted(unit.unverified),
                'build_version': services.build_versions.get(title_id) if services.build_versions else None,
            })

    @ns_titles.route('/<string:title_id>/archive')
    @ns_titles.response(404, 'Title not found')
    class TitleArchive(Resource):
        @ns_titles.doc('download_title')
        def get(self, title_id):
            """Download the stored bundle as a ZIP archive"""
            title_id = normalize_title_id(title_id)
            files = get_services().store_client.read_unit(title_id)
            if files is None:
                return not_found_response('Title', title_id)
            return send_file(io.BytesIO(build_archive(files)), mimetype='application/zip',
                             as_attachment=True, download_name=f"{title_id}.zip")

    @ns_titles.route('/<string:title_id>/reconcile')
    class TitleReconcile(Resource):
        @ns_titles.doc('reconcile_title')
        @ns_titles.expect(reconcile_parser)
        def post(self, title_id):
            """Reconcile one title against the catalog within a time budget"""
            args = reconcile_parser.parse_args()
            result = get_services().reconciler.reconcile_on_demand(title_id, timeout=args.get('timeout'))
            if result is None:
                return success_response(None, message='Reconciliation is still running; result not available yet',
                                        status_code=202, code=ErrorCode.ACCEPTED)
            return success_response(result.to_dict())

    @ns_titles.route('/<string:title_id>/dlc')
    class TitleDLC(Resource):
        @ns_titles.doc('analyze_dlc')
        def get(self, title_id):
            """DLC completeness of a title"""
            analysis = get_services().dlc_analyzer.analyze(title_id)
            return success_response(analysis.to_dict())

    # Namespace System
    @ns_system.route('/health')
    class Health(Resource):
        def get(self):
            """Simple health check endpoint"""
            services = get_services()
            last_pass = services.reconciler.last_summary
            return {
                'status': 'healthy',
                'api_version': '1.0',
                'store_backend': type(services.store_client.backend).__name__,
                'scheduler_running': bool(services.scheduler and services.scheduler.scheduler.running),
                'last_reconciliation': last_pass.to_dict() if last_pass else None,
            }

    return api
