# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.

import contextlib
import io
import os
import tempfile
import unittest

from pydicom import dataset

import fakepacs

from pacsnet import __main__ as cli
from pacsnet import statuses


class TestCommandLine(unittest.TestCase):
    def setUp(self):
        self.pacs = fakepacs.FakePACS()
        self.pacs.start()
        self.common = ['--host', '127.0.0.1', '--port', str(self.pacs.port),
                       '--aec', 'PACS', '--timeout', '5']

    def tearDown(self):
        self.pacs.stop()

    def run_cli(self, *args):
        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            exit_code = cli.main(self.common + list(args))
        return exit_code, output.getvalue()

    def test_echo(self):
        exit_code, output = self.run_cli('echo')
        self.assertEqual(exit_code, 0)
        self.assertIn('C-ECHO succeeded', output)
        self.assertEqual(self.pacs.associate_requests[0].calling_ae_title, 'PACSNET')

    def test_echo_failure(self):
        self.pacs.reject = (1, 1, 7)
        exit_code, output = self.run_cli('echo')
        self.assertEqual(exit_code, 1)
        self.assertIn('called-AE-title-not-recognized', output)

    def test_find(self):
        ds = dataset.Dataset()
        ds.StudyInstanceUID = '1.2.3.4'
        ds.StudyDate = '20241113'
        ds.PatientName = 'DOE^JOHN'
        ds.PatientID = '12345'
        ds.ModalitiesInStudy = 'CT'
        self.pacs.find_results = [ds]
        exit_code, output = self.run_cli('find', '--patient-name', 'DOE*', '--modality', 'CT')
        self.assertEqual(exit_code, 0)
        self.assertIn('2024-11-13', output)
        self.assertIn('JOHN DOE (12345)', output)
        self.assertIn('1 studies found', output)

    def test_store(self):
        self.pacs.store_status = statuses.OUT_OF_RESOURCES
        fd, path = tempfile.mkstemp(suffix='.pdf')
        with os.fdopen(fd, 'wb') as f:
            f.write(b'%PDF-1.4\n%%EOF\n')
        try:
            exit_code, output = self.run_cli('store', path, '--patient-name', 'DOE^JOHN',
                                             '--patient-id', '12345', '--study-uid', '1.2.3.4')
        finally:
            os.remove(path)
        self.assertEqual(exit_code, 1)
        self.assertIn('0xA700', output)
        self.assertEqual(len(self.pacs.stored), 1)

    def test_invalid_configuration(self):
        error = io.StringIO()
        with contextlib.redirect_stderr(error):
            exit_code = cli.main(['--host', '127.0.0.1', '--aet', 'A' * 17, 'echo'])
        self.assertEqual(exit_code, 1)
        self.assertIn('Invalid configuration', error.getvalue())


class TestSourceFiles(unittest.TestCase):
    def test_license_header(self):
        package_dir = os.path.dirname(cli.__file__)
        for name in sorted(os.listdir(package_dir)):
            if not name.endswith('.py') or name == '__init__.py':
                continue
            with open(os.path.join(package_dir, name)) as source:
                self.assertTrue(source.readline().startswith('# Copyright (c)'), name)


if __name__ == '__main__':
    unittest.main()
