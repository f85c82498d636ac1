# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Study level attributes: tag table, query identifier builder, response mapping
and display formatting.

Query identifier is built from :data:`STUDY_RETURN_KEYS` table. Every return
key is always present in the identifier, keys that were not set by the caller
are sent with zero length value (universal matching).

Each C-FIND response identifier is mapped into :class:`DicomStudy`. Attributes
that are not in the return key table (vendor extensions, private tags) are not
dropped: they are kept in :attr:`DicomStudy.extensions`.
"""

import collections
import re

from pydicom import datadict
from pydicom import dataelem
from pydicom import dataset
from pydicom import multival

QUERY_RETRIEVE_LEVEL = 0x00080052
STUDY_DATE = 0x00080020
STUDY_TIME = 0x00080030
ACCESSION_NUMBER = 0x00080050
MODALITIES_IN_STUDY = 0x00080061
INSTITUTION_NAME = 0x00080080
REFERRING_PHYSICIAN_NAME = 0x00080090
STUDY_DESCRIPTION = 0x00081030
PATIENT_NAME = 0x00100010
PATIENT_ID = 0x00100020
PATIENT_BIRTH_DATE = 0x00100030
PATIENT_SEX = 0x00100040
STUDY_INSTANCE_UID = 0x0020000D
NUMBER_OF_STUDY_RELATED_SERIES = 0x00201206
NUMBER_OF_STUDY_RELATED_INSTANCES = 0x00201208

SPECIFIC_CHARACTER_SET = 0x00080005

STUDY_RETURN_KEYS = collections.OrderedDict([
    (QUERY_RETRIEVE_LEVEL, ('QueryRetrieveLevel', 'CS')),
    (STUDY_DATE, ('StudyDate', 'DA')),
    (STUDY_TIME, ('StudyTime', 'TM')),
    (ACCESSION_NUMBER, ('AccessionNumber', 'SH')),
    (MODALITIES_IN_STUDY, ('ModalitiesInStudy', 'CS')),
    (INSTITUTION_NAME, ('InstitutionName', 'LO')),
    (REFERRING_PHYSICIAN_NAME, ('ReferringPhysicianName', 'PN')),
    (STUDY_DESCRIPTION, ('StudyDescription', 'LO')),
    (PATIENT_NAME, ('PatientName', 'PN')),
    (PATIENT_ID, ('PatientID', 'LO')),
    (PATIENT_BIRTH_DATE, ('PatientBirthDate', 'DA')),
    (PATIENT_SEX, ('PatientSex', 'CS')),
    (STUDY_INSTANCE_UID, ('StudyInstanceUID', 'UI')),
    (NUMBER_OF_STUDY_RELATED_SERIES, ('NumberOfStudyRelatedSeries', 'IS')),
    (NUMBER_OF_STUDY_RELATED_INSTANCES, ('NumberOfStudyRelatedInstances', 'IS')),
])
"""Study level return keys: tag -> (keyword, VR)"""

# Tags that are never reported as extensions
_NOT_EXTENSIONS = frozenset([SPECIFIC_CHARACTER_SET, QUERY_RETRIEVE_LEVEL])


def vr_for(tag):
    """Looks up VR for a tag.

    Study return key table is checked first, then pydicom data dictionary.
    Unknown tags are treated as ``UN``.

    :param tag: tag as integer
    :return: VR string
    """
    try:
        return STUDY_RETURN_KEYS[tag][1]
    except KeyError:
        pass
    try:
        return datadict.dictionary_VR(tag)
    except KeyError:
        return 'UN'


def element(tag, value):
    """Builds data element with VR from :func:`vr_for`

    :param tag: tag as integer
    :param value: element value (``None`` or ``''`` for zero length value)
    :rtype: pydicom.dataelem.DataElement
    """
    vr = vr_for(tag)
    if value is None:
        value = b'' if vr in ('UN', 'OB', 'OW') else ''
    return dataelem.DataElement(tag, vr, value)


def tag_key(tag):
    """Tag as ``GGGGEEEE`` string"""
    return '{0:08X}'.format(int(tag))


_QUERY_FIELDS = ['patient_name', 'patient_id', 'accession_number', 'study_date',
                 'modality', 'study_description', 'study_instance_uid']

_QUERY_FIELD_TAGS = collections.OrderedDict([
    ('patient_name', PATIENT_NAME),
    ('patient_id', PATIENT_ID),
    ('accession_number', ACCESSION_NUMBER),
    ('study_date', STUDY_DATE),
    ('modality', MODALITIES_IN_STUDY),
    ('study_description', STUDY_DESCRIPTION),
    ('study_instance_uid', STUDY_INSTANCE_UID),
])


def snake_case(name):
    """camelCase key to snake_case (``studyInstanceUID`` -> ``study_instance_uid``)"""
    name = name.replace('UID', 'Uid').replace('ID', 'Id')
    return re.sub(r'(?<!^)([A-Z])', r'_\1', name).lower()


class StudyQueryParams(collections.namedtuple('StudyQueryParams', _QUERY_FIELDS)):
    """Study query filters.

    All fields are optional. Patient name and other string keys may contain
    ``*`` and ``?`` wildcards, study date may be a single date ``YYYYMMDD``
    or a range ``YYYYMMDD-YYYYMMDD`` (either bound may be omitted), study
    instance UID may be a backslash separated list of UIDs.
    """
    __slots__ = ()

    def __new__(cls, patient_name=None, patient_id=None, accession_number=None,
                study_date=None, modality=None, study_description=None,
                study_instance_uid=None):
        return super(StudyQueryParams, cls).__new__(
            cls, patient_name, patient_id, accession_number, study_date,
            modality, study_description, study_instance_uid)

    @classmethod
    def from_dict(cls, params):
        """Creates query parameters from mapping with camelCase or snake_case keys

        Unknown keys are ignored, empty values are treated as not set.
        """
        values = {}
        for key, value in params.items():
            field = key if key in cls._fields else snake_case(key)
            if field in cls._fields and value not in (None, ''):
                values[field] = value
        return cls(**values)

    def filters(self):
        """Iterates over (tag, value) pairs of the set filters"""
        for field, tag in _QUERY_FIELD_TAGS.items():
            value = getattr(self, field)
            if value not in (None, ''):
                yield tag, value


def build_query_dataset(params):
    """Builds Study Root C-FIND identifier from query parameters

    :param params: query parameters
    :type params: StudyQueryParams
    :rtype: pydicom.dataset.Dataset
    """
    ds = dataset.Dataset()
    for tag in STUDY_RETURN_KEYS:
        ds.add(element(tag, None))
    ds[QUERY_RETRIEVE_LEVEL].value = 'STUDY'
    for tag, value in params.filters():
        ds[tag].value = value
    return ds


def _text(value):
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('ascii', 'replace').rstrip(' \x00')
    if isinstance(value, (multival.MultiValue, list, tuple)):
        return '\\'.join(_text(v) for v in value)
    return str(value).strip()


def _count(value):
    text = _text(value)
    try:
        return int(text) if text else 0
    except ValueError:
        return 0


def _extension_value(elem):
    if elem.VR == 'SQ':
        return [_extensions(item) for item in elem.value]
    if elem.VR in ('UN', 'OB', 'OW') or isinstance(elem.value, bytes):
        return elem.value or b''
    return _text(elem.value)


def _extensions(ds):
    return {tag_key(elem.tag): _extension_value(elem)
            for elem in ds if elem.tag not in STUDY_RETURN_KEYS and
            elem.tag not in _NOT_EXTENSIONS and elem.tag.element != 0}


_STUDY_FIELDS = ['study_instance_uid', 'study_date', 'study_time',
                 'accession_number', 'modalities', 'patient_name',
                 'patient_id', 'patient_birth_date', 'patient_sex',
                 'study_description', 'institution_name',
                 'referring_physician_name', 'number_of_series',
                 'number_of_instances', 'extensions']

_STUDY_FIELD_TAGS = collections.OrderedDict([
    ('study_instance_uid', STUDY_INSTANCE_UID),
    ('study_date', STUDY_DATE),
    ('study_time', STUDY_TIME),
    ('accession_number', ACCESSION_NUMBER),
    ('modalities', MODALITIES_IN_STUDY),
    ('patient_name', PATIENT_NAME),
    ('patient_id', PATIENT_ID),
    ('patient_birth_date', PATIENT_BIRTH_DATE),
    ('patient_sex', PATIENT_SEX),
    ('study_description', STUDY_DESCRIPTION),
    ('institution_name', INSTITUTION_NAME),
    ('referring_physician_name', REFERRING_PHYSICIAN_NAME),
    ('number_of_series', NUMBER_OF_STUDY_RELATED_SERIES),
    ('number_of_instances', NUMBER_OF_STUDY_RELATED_INSTANCES),
])

_CAMEL_CASE = {
    'study_instance_uid': 'studyInstanceUID',
    'patient_id': 'patientId',
}


def camel_case(name):
    try:
        return _CAMEL_CASE[name]
    except KeyError:
        head, *tail = name.split('_')
        return head + ''.join(part.title() for part in tail)


class DicomStudy(collections.namedtuple('DicomStudy', _STUDY_FIELDS)):
    """Study record parsed from one C-FIND response identifier.

    Values are raw DICOM text (person names keep ``^`` separators, dates are
    ``YYYYMMDD``, multiple modalities are ``\\`` separated). Attributes that
    were absent or empty in the response are ``''``, counts are ``0``.
    """
    __slots__ = ()

    @classmethod
    def from_dataset(cls, ds):
        """Maps response identifier into study record

        :param ds: C-FIND response identifier
        :type ds: pydicom.dataset.Dataset
        :rtype: DicomStudy
        """
        values = {}
        for field, tag in _STUDY_FIELD_TAGS.items():
            elem = ds.get(tag)
            value = elem.value if elem is not None else None
            if field.startswith('number_of_'):
                values[field] = _count(value)
            else:
                values[field] = _text(value)
        values['extensions'] = _extensions(ds)
        return cls(**values)

    def as_dict(self):
        """Study as dictionary with camelCase keys"""
        return {camel_case(field): value for field, value in self._asdict().items()}

    def for_display(self):
        """Study as dictionary with names and dates formatted for display.

        Raw values of formatted fields are kept under ``*Raw`` keys.
        """
        result = self.as_dict()
        result['id'] = self.study_instance_uid
        result['patientName'] = format_dicom_patient_name(self.patient_name)
        result['patientNameRaw'] = self.patient_name
        result['patientBirthDate'] = format_dicom_date(self.patient_birth_date)
        result['studyDate'] = format_dicom_date(self.study_date)
        result['studyDateRaw'] = self.study_date
        result['studyTime'] = format_dicom_time(self.study_time)
        result['studyTimeRaw'] = self.study_time
        result['referringPhysicianName'] = format_dicom_patient_name(
            self.referring_physician_name)
        return result

    def matches(self, params):
        """Checks study against query parameters.

        Applies the same rules that PACS is expected to apply, so that
        non-matching studies returned by PACS that ignores some keys can be
        filtered out. Keys that PACS did not return (empty values) are not
        used for filtering.

        :param params: query parameters
        :type params: StudyQueryParams
        :rtype: bool
        """
        for field in _QUERY_FIELDS:
            condition = getattr(params, field)
            if condition in (None, ''):
                continue
            value = self.modalities if field == 'modality' else getattr(self, field)
            if not value:
                continue
            if not _MATCHERS.get(field, match_string)(value, condition):
                return False
        return True


def _wildcard_regex(pattern, ignore_case):
    regex = ''.join('.*' if c == '*' else '.' if c == '?' else re.escape(c)
                    for c in pattern)
    return re.compile(regex + r'\Z', re.IGNORECASE if ignore_case else 0)


def match_string(value, pattern, ignore_case=False):
    """Single value matching with ``*`` and ``?`` wildcards (PS 3.4 C.2.2.2)"""
    pattern = pattern.strip()
    if not pattern or pattern == '*':
        return True
    return _wildcard_regex(pattern, ignore_case).match(value.strip()) is not None


def match_name(value, pattern):
    """Person name matching, case insensitive"""
    return match_string(value, pattern, ignore_case=True)


def match_any_value(value, pattern):
    """Matches pattern against any value of multi-valued attribute"""
    return any(match_string(item, pattern, ignore_case=True)
               for item in value.split('\\'))


def match_uid_list(value, uids):
    """UID list matching: value must be one of backslash separated UIDs"""
    return value.strip() in {uid.strip() for uid in uids.split('\\')}


def match_date_range(value, condition):
    """Date or date range matching, bounds are inclusive.

    Supported conditions: ``YYYYMMDD``, ``YYYYMMDD-YYYYMMDD``, ``-YYYYMMDD``
    and ``YYYYMMDD-``.
    """
    value = value.strip()
    condition = condition.strip()
    if '-' not in condition:
        return value == condition
    start, end = condition.split('-', 1)
    start, end = start.strip(), end.strip()
    if start and value < start:
        return False
    if end and value > end:
        return False
    return True


_MATCHERS = {
    'patient_name': match_name,
    'study_date': match_date_range,
    'modality': match_any_value,
    'study_instance_uid': match_uid_list,
}


def format_dicom_date(dicom_date):
    """Formats ``YYYYMMDD`` as ``YYYY-MM-DD``.

    Any other input (including empty string) is returned unchanged.
    """
    if not dicom_date or len(dicom_date) != 8:
        return dicom_date
    return '{0}-{1}-{2}'.format(dicom_date[:4], dicom_date[4:6], dicom_date[6:8])


def format_dicom_time(dicom_time):
    """Formats ``HHMMSS[.FFFFFF]`` as ``HH:MM:SS``.

    Input shorter than 6 characters is returned unchanged.
    """
    if not dicom_time or len(dicom_time) < 6:
        return dicom_time
    return '{0}:{1}:{2}'.format(dicom_time[:2], dicom_time[2:4], dicom_time[4:6])


def format_dicom_patient_name(dicom_name):
    """Formats ``Last^First^Middle^Prefix^Suffix`` as ``First Last``"""
    if not dicom_name:
        return ''
    parts = dicom_name.split('^')
    last_name = parts[0]
    first_name = parts[1] if len(parts) > 1 else ''
    return '{0} {1}'.format(first_name, last_name).strip()
