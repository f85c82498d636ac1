"""
pacsnet - DICOM network client for PACS: verification (C-ECHO), study query
(C-FIND) and report storage (C-STORE of Encapsulated PDF).

Most applications only need :class:`~pacsnet.client.PACSClient`::

    import pacsnet

    client = pacsnet.PACSClient(pacsnet.PACSConfig('SERENVALE', 'PACS', 'pacs.local', 11112))
    if client.test_connection():
        result = client.query_studies({'patientName': 'DOE*'})

Library does not configure logging, all messages go to ``pacsnet.*`` loggers.
"""

import logging

from . import __version__

__version_info__ = __version__.__version__.split('.')

from .client import PACSClient, create_pacs_client, EchoResult, FindResult, StoreResult
from .config import PACSConfig
from .attributes import StudyQueryParams, DicomStudy
from .statuses import Status, ServiceStatusFailure
from .exceptions import PACSError, ConfigurationError, ConnectionError, TimeoutError, \
    MalformedDatasetError, DIMSEProcessingError

logging.getLogger('pacsnet').addHandler(logging.NullHandler())
