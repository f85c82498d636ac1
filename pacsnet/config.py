# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
PACS connection configuration.

:class:`PACSConfig` is an immutable (frozen) pydantic model describing a
remote PACS and the local application entity. Fields are validated when the
object is created, before any network I/O, and pydantic validation errors are
reported as :class:`~pacsnet.exceptions.ConfigurationError`. Configuration is
never changed in place: :meth:`PACSConfig.replace` returns a new instance.

Configuration records coming from the persistence layer are mapped with
:meth:`PACSConfig.from_settings`::

    config = PACSConfig.from_settings({
        'host': 'pacs.local', 'port': 11112,
        'aeTitle': 'SERENVALE', 'remoteAeTitle': 'PACS',
        'storeNode': 'PACS_ARCHIVE'
    })
"""

from typing import Optional

import pydantic

from . import exceptions

DEFAULT_PORT = 104
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_PDU_LENGTH = 65536
MIN_MAX_PDU_LENGTH = 1024
AE_TITLE_MAX_LENGTH = 16

_AE_TITLE_NAMES = {
    'local_ae_title': 'Local AE title',
    'remote_ae_title': 'Remote AE title',
    'query_ae_title': 'Query AE title',
    'store_ae_title': 'Store AE title',
}


def _check_ae_title(ae_title, name):
    if not isinstance(ae_title, str):
        raise ValueError('{0} must be a string'.format(name))
    stripped = ae_title.strip()
    if not stripped:
        raise ValueError('{0} must not be empty'.format(name))
    if len(stripped) > AE_TITLE_MAX_LENGTH:
        raise ValueError(
            '{0} "{1}" is longer than {2} characters'.format(name, stripped, AE_TITLE_MAX_LENGTH))
    if any(not (0x20 <= ord(c) < 0x7F) or c == '\\' for c in stripped):
        raise ValueError('{0} "{1}" contains invalid characters'.format(name, stripped))
    return stripped


def validate_ae_title(ae_title, name='AE title'):
    """Checks AE title against DICOM constraints (PS 3.5 6.2, AE VR).

    Leading and trailing spaces are not significant.

    :param ae_title: AE title to check
    :param name: parameter name used in error message
    :raises exceptions.ConfigurationError: if AE title is invalid
    :return: stripped AE title
    """
    try:
        return _check_ae_title(ae_title, name)
    except ValueError as exc:
        raise exceptions.ConfigurationError(str(exc))


def _describe(error):
    """Turns pydantic validation error into a single line message"""
    messages = []
    for item in error.errors():
        if item['type'] == 'value_error':
            message = str(item['ctx']['error'])
        else:
            message = item['msg']
        field = '.'.join(str(part) for part in item['loc'])
        messages.append('{0}: {1}'.format(field, message) if field else message)
    return '; '.join(messages)


class PACSConfig(pydantic.BaseModel):
    """Connection descriptor for a remote PACS.

    Fields may be given positionally, in the order they are listed below.

    :ivar local_ae_title: calling (local) AE title
    :ivar remote_ae_title: called (remote) AE title
    :ivar host: PACS host name or address
    :ivar port: PACS port (1-65535)
    :ivar username: optional user name for user identity negotiation
    :ivar password: optional password for user identity negotiation, never
                    shown in ``repr``
    :ivar timeout: timeout in seconds, bounds connect, each PDU read and
                   the whole operation
    :ivar query_ae_title: called AE title for C-FIND (defaults to
                          ``remote_ae_title``)
    :ivar store_ae_title: called AE title for C-STORE (defaults to
                          ``remote_ae_title``)
    :ivar max_pdu_length: maximum P-DATA-TF PDU length we are willing to receive
    :raises exceptions.ConfigurationError: if any field is invalid
    """
    model_config = pydantic.ConfigDict(frozen=True, extra='forbid')

    local_ae_title: str
    remote_ae_title: str
    host: str
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = pydantic.Field(default=None, repr=False)
    timeout: float = DEFAULT_TIMEOUT
    query_ae_title: Optional[str] = None
    store_ae_title: Optional[str] = None
    max_pdu_length: int = DEFAULT_MAX_PDU_LENGTH

    def __init__(self, *args, **data):
        fields = list(type(self).model_fields)
        if len(args) > len(fields):
            raise TypeError('PACSConfig takes at most {0} positional arguments'.format(
                len(fields)))
        for name, value in zip(fields, args):
            if name in data:
                raise TypeError('PACSConfig got multiple values for {0}'.format(name))
            data[name] = value
        try:
            super(PACSConfig, self).__init__(**data)
        except pydantic.ValidationError as exc:
            raise exceptions.ConfigurationError(_describe(exc))

    @pydantic.field_validator('local_ae_title', 'remote_ae_title')
    @classmethod
    def check_required_ae_title(cls, value, info):
        return _check_ae_title(value, _AE_TITLE_NAMES[info.field_name])

    @pydantic.field_validator('query_ae_title', 'store_ae_title')
    @classmethod
    def check_optional_ae_title(cls, value, info):
        if not value:
            return None
        return _check_ae_title(value, _AE_TITLE_NAMES[info.field_name])

    @pydantic.field_validator('host')
    @classmethod
    def check_host(cls, value):
        if not value.strip():
            raise ValueError('PACS host is required')
        return value.strip()

    @pydantic.field_validator('port')
    @classmethod
    def check_port(cls, value):
        if not 1 <= value <= 65535:
            raise ValueError('Port {0} is out of range (1-65535)'.format(value))
        return value

    @pydantic.field_validator('timeout')
    @classmethod
    def check_timeout(cls, value):
        if value <= 0:
            raise ValueError('Timeout must be positive')
        return value

    @pydantic.field_validator('max_pdu_length')
    @classmethod
    def check_max_pdu_length(cls, value):
        if value < MIN_MAX_PDU_LENGTH:
            raise ValueError('Maximum PDU length must be at least {0} bytes'.format(
                MIN_MAX_PDU_LENGTH))
        return value

    @pydantic.model_validator(mode='after')
    def check_credentials(self):
        if self.password and not self.username:
            raise ValueError('Password given without user name')
        return self

    def replace(self, **changes):
        """Returns new validated configuration with provided fields replaced.

        :raises exceptions.ConfigurationError: if resulting configuration is invalid
        """
        fields = self.model_dump()
        fields.update(changes)
        return type(self)(**fields)

    @property
    def called_find_ae_title(self):
        """Called AE title used for C-FIND"""
        return self.query_ae_title or self.remote_ae_title

    @property
    def called_store_ae_title(self):
        """Called AE title used for C-STORE"""
        return self.store_ae_title or self.remote_ae_title

    def remote_ae(self, called_ae_title=None):
        """Remote AE parameters in a form expected by
        :meth:`~pacsnet.applicationentity.ClientAE.request_association`

        :param called_ae_title: overrides called AE title
        :return: dictionary with remote AE parameters
        """
        remote_ae = {
            'aet': called_ae_title or self.remote_ae_title,
            'address': self.host,
            'port': self.port
        }
        if self.username:
            remote_ae['username'] = self.username
            if self.password:
                remote_ae['password'] = self.password
        return remote_ae

    @classmethod
    def from_settings(cls, settings):
        """Creates configuration from a persistence layer settings record.

        Both camelCase and snake_case keys are accepted. ``queryNode`` and
        ``storeNode`` are used as called AE titles for C-FIND and C-STORE.
        Credentials may be given either as ``username``/``password`` or in
        ``credentials`` (or ``auth``) sub-record.

        :param settings: settings record (mapping)
        :raises exceptions.ConfigurationError: if record is incomplete or invalid
        :return: validated configuration
        :rtype: PACSConfig
        """
        def get(*keys, **kwargs):
            for key in keys:
                value = settings.get(key)
                if value not in (None, ''):
                    return value
            return kwargs.get('default')

        credentials = get('credentials', 'auth', default={})
        query_ae_title = get('queryNode', 'query_node', 'query_ae_title')
        store_ae_title = get('storeNode', 'store_node', 'store_ae_title')
        remote_ae_title = get('remoteAeTitle', 'remote_ae_title') \
            or query_ae_title or store_ae_title
        if not remote_ae_title:
            raise exceptions.ConfigurationError('Remote AE title is required')
        local_ae_title = get('aeTitle', 'localAeTitle', 'local_ae_title', 'ae_title')
        if not local_ae_title:
            raise exceptions.ConfigurationError('Local AE title is required')

        return cls(
            local_ae_title=local_ae_title,
            remote_ae_title=remote_ae_title,
            host=get('host'),
            port=get('port', default=DEFAULT_PORT),
            username=get('username') or credentials.get('username'),
            password=get('password') or credentials.get('password'),
            timeout=get('timeout', default=DEFAULT_TIMEOUT),
            query_ae_title=query_ae_title,
            store_ae_title=store_ae_title,
            max_pdu_length=get('maxPduLength', 'max_pdu_length',
                               default=DEFAULT_MAX_PDU_LENGTH)
        )
