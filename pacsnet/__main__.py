# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Command line interface::

    python -m pacsnet --host pacs.local --port 11112 --aec PACS echo
    python -m pacsnet --host pacs.local --aec PACS find --patient-name "DOE*" --modality CT
    python -m pacsnet --host pacs.local --aec PACS store report.pdf \\
        --patient-name "DOE^JOHN" --patient-id 12345 --study-uid 1.2.3.4

Exit status is 0 on success and 1 on failure.
"""

import argparse
import logging
import sys

from . import __version__
from . import client
from . import config
from . import exceptions


def _add_common_arguments(parser):
    parser.add_argument('--host', required=True, help='PACS host name or address')
    parser.add_argument('--port', type=int, default=config.DEFAULT_PORT,
                        help='PACS port (default: %(default)s)')
    parser.add_argument('--aet', default='PACSNET', help='calling (local) AE title '
                                                         '(default: %(default)s)')
    parser.add_argument('--aec', default='ANY-SCP', help='called (remote) AE title '
                                                         '(default: %(default)s)')
    parser.add_argument('--timeout', type=float, default=config.DEFAULT_TIMEOUT,
                        help='operation timeout in seconds (default: %(default)s)')
    parser.add_argument('--username', help='user name for user identity negotiation')
    parser.add_argument('--password', help='password for user identity negotiation')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('-v', '--verbose', action='store_true', help='verbose mode')
    verbosity.add_argument('-d', '--debug', action='store_true',
                           help='debug mode, logs every PDU and DIMSE message')


def build_parser():
    parser = argparse.ArgumentParser(prog='pacsnet', description='DICOM PACS client')
    parser.add_argument('--version', action='version',
                        version='%(prog)s ' + __version__.__version__)
    _add_common_arguments(parser)
    commands = parser.add_subparsers(dest='command')
    commands.required = True

    commands.add_parser('echo', help='verify connection with C-ECHO')

    find = commands.add_parser('find', help='search studies with C-FIND')
    find.add_argument('--patient-name', help='patient name, * and ? wildcards allowed')
    find.add_argument('--patient-id')
    find.add_argument('--accession-number')
    find.add_argument('--study-date', help='YYYYMMDD or YYYYMMDD-YYYYMMDD range')
    find.add_argument('--modality')
    find.add_argument('--study-description')
    find.add_argument('--study-uid', dest='study_instance_uid',
                      help='study instance UID, backslash separated list allowed')

    store = commands.add_parser('store', help='store PDF report with C-STORE')
    store.add_argument('pdf', type=argparse.FileType('rb'), help='PDF file')
    store.add_argument('--patient-name', required=True)
    store.add_argument('--patient-id', required=True)
    store.add_argument('--study-uid', dest='study_instance_uid', required=True)
    store.add_argument('--study-date')
    store.add_argument('--accession-number')
    store.add_argument('--patient-birth-date')
    store.add_argument('--patient-sex')
    store.add_argument('--study-description')
    store.add_argument('--institution-name')
    store.add_argument('--document-title')
    return parser


def _echo(pacs_client, _):
    result = pacs_client.echo()
    if result.success:
        print('C-ECHO succeeded: {0}'.format(result.status))
    else:
        print('Error: {0}'.format(result.error))
    return result.success


def _find(pacs_client, args):
    params = {key: getattr(args, key) for key in (
        'patient_name', 'patient_id', 'accession_number', 'study_date',
        'modality', 'study_description', 'study_instance_uid')}
    result = pacs_client.query_studies(params)
    for study in result.studies:
        study = study.for_display()
        print('{studyDate} {studyTime} {patientName} ({patientId}) {modalities} '
              '{accessionNumber} {studyDescription} {studyInstanceUID}'.format(**study))
    print('{0} studies found'.format(result.total_results))
    if not result.success:
        print('Error: {0}'.format(result.error))
    return result.success


def _store(pacs_client, args):
    with args.pdf:
        pdf_bytes = args.pdf.read()
    metadata = {key: getattr(args, key) for key in (
        'patient_name', 'patient_id', 'study_instance_uid', 'study_date',
        'accession_number', 'patient_birth_date', 'patient_sex',
        'study_description', 'institution_name', 'document_title')}
    result = pacs_client.store_report_pdf(pdf_bytes, metadata)
    if result.success:
        print('Stored {0}: {1}'.format(result.sop_instance_uid, result.status))
    else:
        print('Error: {0}'.format(result.error))
    return result.success


COMMANDS = {
    'echo': _echo,
    'find': _find,
    'store': _store,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.debug:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        pacs_config = config.PACSConfig(
            local_ae_title=args.aet, remote_ae_title=args.aec, host=args.host,
            port=args.port, username=args.username, password=args.password,
            timeout=args.timeout)
        pacs_client = client.PACSClient(pacs_config)
    except exceptions.ConfigurationError as exc:
        print('Invalid configuration: {0}'.format(exc), file=sys.stderr)
        return 1
    return 0 if COMMANDS[args.command](pacs_client, args) else 1


if __name__ == '__main__':
    sys.exit(main())
