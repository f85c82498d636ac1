# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.

import unittest

from pydicom import dataset
from pydicom import sequence

from pacsnet import attributes
from pacsnet import dsutils


def response_identifier(**values):
    ds = dataset.Dataset()
    ds.SpecificCharacterSet = 'ISO_IR 100'
    ds.QueryRetrieveLevel = 'STUDY'
    ds.StudyInstanceUID = values.get('uid', '1.2.3.4')
    ds.StudyDate = values.get('date', '20240115')
    ds.StudyTime = '101530.123'
    ds.PatientName = values.get('name', 'DOE^JOHN')
    ds.PatientID = values.get('patient_id', '12345')
    ds.ModalitiesInStudy = values.get('modalities', ['CT', 'SR'])
    ds.NumberOfStudyRelatedSeries = '3'
    ds.NumberOfStudyRelatedInstances = 120
    return ds


class TestElements(unittest.TestCase):
    def test_vr_from_table(self):
        self.assertEqual(attributes.vr_for(attributes.PATIENT_NAME), 'PN')

    def test_vr_from_dictionary(self):
        self.assertEqual(attributes.vr_for(0x00420011), 'OB')

    def test_vr_unknown(self):
        self.assertEqual(attributes.vr_for(0x00091001), 'UN')

    def test_empty_element(self):
        elem = attributes.element(attributes.PATIENT_ID, None)
        self.assertEqual(elem.VR, 'LO')
        self.assertEqual(elem.value, '')

    def test_tag_key(self):
        self.assertEqual(attributes.tag_key(0x0020000D), '0020000D')


class TestQueryDataset(unittest.TestCase):
    def test_all_return_keys_present(self):
        ds = attributes.build_query_dataset(attributes.StudyQueryParams())
        for tag in attributes.STUDY_RETURN_KEYS:
            self.assertIn(tag, ds)
        self.assertEqual(ds.QueryRetrieveLevel, 'STUDY')
        self.assertEqual(ds.PatientName, '')

    def test_filters(self):
        params = attributes.StudyQueryParams(patient_name='DOE*', modality='CT',
                                             study_date='20240101-20240131')
        ds = attributes.build_query_dataset(params)
        self.assertEqual(ds.PatientName, 'DOE*')
        self.assertEqual(ds.ModalitiesInStudy, 'CT')
        self.assertEqual(ds.StudyDate, '20240101-20240131')

    def test_universal_match_is_zero_length(self):
        ds = attributes.build_query_dataset(attributes.StudyQueryParams(patient_id='1'))
        encoded = dsutils.encode(ds, True, True)
        # (0008,0050) Accession Number with zero length
        self.assertIn(b'\x08\x00\x50\x00\x00\x00\x00\x00', encoded)

    def test_params_from_dict(self):
        params = attributes.StudyQueryParams.from_dict({
            'patientName': 'DOE*', 'studyInstanceUID': '1.2.3', 'modality': '',
            'unknownKey': 'x', 'accession_number': 'A1'})
        self.assertEqual(params.patient_name, 'DOE*')
        self.assertEqual(params.study_instance_uid, '1.2.3')
        self.assertEqual(params.accession_number, 'A1')
        self.assertIsNone(params.modality)


class TestDicomStudy(unittest.TestCase):
    def test_from_dataset(self):
        study = attributes.DicomStudy.from_dataset(response_identifier())
        self.assertEqual(study.study_instance_uid, '1.2.3.4')
        self.assertEqual(study.patient_name, 'DOE^JOHN')
        self.assertEqual(study.modalities, 'CT\\SR')
        self.assertEqual(study.number_of_series, 3)
        self.assertEqual(study.number_of_instances, 120)
        self.assertEqual(study.accession_number, '')
        self.assertEqual(study.extensions, {})

    def test_missing_counts(self):
        ds = response_identifier()
        del ds.NumberOfStudyRelatedSeries
        ds.NumberOfStudyRelatedInstances = None
        study = attributes.DicomStudy.from_dataset(ds)
        self.assertEqual(study.number_of_series, 0)
        self.assertEqual(study.number_of_instances, 0)

    def test_extensions(self):
        ds = response_identifier()
        ds.add_new(0x00091001, 'UN', b'\x01\x02')
        item = dataset.Dataset()
        item.CodeValue = 'X'
        ds.ProcedureCodeSequence = sequence.Sequence([item])
        ds.IssuerOfPatientID = 'HOSP'
        study = attributes.DicomStudy.from_dataset(ds)
        self.assertEqual(study.extensions['00091001'], b'\x01\x02')
        self.assertEqual(study.extensions['00100021'], 'HOSP')
        self.assertEqual(study.extensions['00081032'], [{'00080100': 'X'}])
        self.assertNotIn('00080005', study.extensions)

    def test_as_dict(self):
        study = attributes.DicomStudy.from_dataset(response_identifier())
        result = study.as_dict()
        self.assertEqual(result['studyInstanceUID'], '1.2.3.4')
        self.assertEqual(result['patientId'], '12345')
        self.assertEqual(result['numberOfSeries'], 3)

    def test_for_display(self):
        study = attributes.DicomStudy.from_dataset(response_identifier())
        result = study.for_display()
        self.assertEqual(result['id'], '1.2.3.4')
        self.assertEqual(result['patientName'], 'JOHN DOE')
        self.assertEqual(result['patientNameRaw'], 'DOE^JOHN')
        self.assertEqual(result['studyDate'], '2024-01-15')
        self.assertEqual(result['studyDateRaw'], '20240115')
        self.assertEqual(result['studyTime'], '10:15:30')

    def test_matches(self):
        study = attributes.DicomStudy.from_dataset(response_identifier())
        params = attributes.StudyQueryParams
        self.assertTrue(study.matches(params(patient_name='doe*', modality='CT')))
        self.assertTrue(study.matches(params(patient_name='DOE^J?HN')))
        self.assertFalse(study.matches(params(patient_name='SMITH*')))
        self.assertFalse(study.matches(params(modality='MR')))
        self.assertTrue(study.matches(params(study_date='20240101-20240131')))
        self.assertFalse(study.matches(params(study_date='20240116-')))
        self.assertTrue(study.matches(params(study_instance_uid='1.2.3\\1.2.3.4')))
        self.assertFalse(study.matches(params(study_instance_uid='1.2.3')))

    def test_empty_values_are_not_filtered(self):
        ds = response_identifier()
        ds.ModalitiesInStudy = ''
        study = attributes.DicomStudy.from_dataset(ds)
        self.assertTrue(study.matches(attributes.StudyQueryParams(modality='CT')))


class TestMatching(unittest.TestCase):
    def test_match_string(self):
        self.assertTrue(attributes.match_string('12345', '123*'))
        self.assertTrue(attributes.match_string('12345', '1234?'))
        self.assertFalse(attributes.match_string('12345', '1234'))
        self.assertTrue(attributes.match_string('anything', '*'))

    def test_match_string_escapes_regex(self):
        self.assertFalse(attributes.match_string('A1B', 'A.B'))
        self.assertTrue(attributes.match_string('A.B', 'A.B'))

    def test_match_date_range(self):
        self.assertTrue(attributes.match_date_range('20240115', '20240115'))
        self.assertTrue(attributes.match_date_range('20240115', '-20240115'))
        self.assertTrue(attributes.match_date_range('20240115', '20240115-'))
        self.assertFalse(attributes.match_date_range('20240114', '20240115-20240120'))
        self.assertFalse(attributes.match_date_range('20240121', '20240115-20240120'))


class TestFormatting(unittest.TestCase):
    def test_format_date(self):
        self.assertEqual(attributes.format_dicom_date('20240115'), '2024-01-15')
        self.assertEqual(attributes.format_dicom_date('2024'), '2024')
        self.assertEqual(attributes.format_dicom_date(''), '')

    def test_format_time(self):
        self.assertEqual(attributes.format_dicom_time('101530.123'), '10:15:30')
        self.assertEqual(attributes.format_dicom_time('1015'), '1015')

    def test_format_patient_name(self):
        self.assertEqual(attributes.format_dicom_patient_name('DOE^JOHN^Q'), 'JOHN DOE')
        self.assertEqual(attributes.format_dicom_patient_name('DOE'), 'DOE')
        self.assertEqual(attributes.format_dicom_patient_name(''), '')


if __name__ == '__main__':
    unittest.main()
