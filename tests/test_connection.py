import unittest
from unittest.mock import MagicMock, patch

import certifi

from pyazimport.connection import (PYTDS, SqlServerConnection, build_odbc_connection_string,
                                   build_tds_params, to_batch_error)
from pyazimport.errors import BatchExecutionError, DatabaseConnectionError

CONFIG = {'server': 'sql01', 'database': 'Sales', 'username': 'importer', 'password': 'pw'}


class ConnectionStringTestCase(unittest.TestCase):
    def test_sql_authentication(self):
        self.assertEqual(
            build_odbc_connection_string(CONFIG),
            "DRIVER={ODBC Driver 18 for SQL Server};SERVER=sql01;DATABASE=Sales;"
            "UID=importer;PWD=pw;TrustServerCertificate=yes;")

    def test_custom_port_and_untrusted_certificate(self):
        config = dict(CONFIG, port=14333, trustServerCertificate=False)
        text = build_odbc_connection_string(config)
        self.assertIn("SERVER=sql01,14333;", text)
        self.assertIn("TrustServerCertificate=no;", text)

    def test_azure_ad(self):
        text = build_odbc_connection_string(dict(CONFIG, authenticationType='azure_ad'))
        self.assertIn("Authentication=ActiveDirectoryDefault;", text)
        self.assertNotIn("PWD=", text)

    def test_trusted_connection_without_username(self):
        text = build_odbc_connection_string({'server': 'sql01', 'database': 'Sales'})
        self.assertIn("Trusted_Connection=yes;", text)

    def test_tds_params(self):
        params = build_tds_params(CONFIG, timeout=60)
        self.assertEqual(params['cafile'], certifi.where())
        self.assertTrue(params['autocommit'])
        self.assertEqual(params['port'], 1433)
        self.assertEqual(params['timeout'], 60)

    def test_tds_requires_credentials(self):
        with self.assertRaises(DatabaseConnectionError):
            build_tds_params({'server': 'sql01', 'database': 'Sales'})


class ToBatchErrorTestCase(unittest.TestCase):
    def test_pyodbc_error_number(self):
        exc = Exception('42S02', "[42S02] [Microsoft][ODBC Driver 18 for SQL Server][SQL Server]"
                                 "Invalid object name 'dbo.Customers'. (208) (SQLExecDirectW)")
        error = to_batch_error(exc)
        self.assertEqual(error.number, 208)
        self.assertFalse(error.timeout)
        self.assertIn("Invalid object name", error.message)

    def test_pyodbc_timeout_state(self):
        error = to_batch_error(Exception('HYT00', '[HYT00] [Microsoft][ODBC Driver 18 for SQL Server]Query timeout expired (0) (SQLExecDirectW)'))
        self.assertTrue(error.timeout)

    def test_tds_error_attributes(self):
        exc = Exception("Cannot find data type dbo.Money2.")
        exc.msg_no = 2715
        exc.text = "Cannot find data type dbo.Money2."
        error = to_batch_error(exc)
        self.assertEqual(error.number, 2715)
        self.assertEqual(error.message, "Cannot find data type dbo.Money2.")

    def test_passthrough(self):
        original = BatchExecutionError("x", number=1)
        self.assertIs(to_batch_error(original), original)


class SqlServerConnectionTestCase(unittest.TestCase):
    def test_execute_drains_result_sets(self):
        connection = SqlServerConnection(CONFIG)
        cursor = MagicMock()
        cursor.nextset.side_effect = [True, False]
        connection.connection = MagicMock()
        connection.connection.cursor.return_value = cursor
        connection.execute("SELECT 1; SELECT 2")
        cursor.execute.assert_called_once_with("SELECT 1; SELECT 2")
        self.assertEqual(cursor.nextset.call_count, 2)
        cursor.close.assert_called_once()

    def test_execute_wraps_driver_errors(self):
        connection = SqlServerConnection(CONFIG)
        cursor = MagicMock()
        cursor.execute.side_effect = Exception('42000', "Incorrect syntax near 'TABEL'. (102) (SQLExecDirectW)")
        connection.connection = MagicMock()
        connection.connection.cursor.return_value = cursor
        with self.assertRaises(BatchExecutionError) as cm:
            connection.execute("CREATE TABEL x")
        self.assertEqual(cm.exception.number, 102)
        cursor.close.assert_called_once()

    def test_connect_failure(self):
        fake_pytds = MagicMock()
        fake_pytds.connect.side_effect = OSError("connection refused")
        connection = SqlServerConnection(CONFIG, client=PYTDS)
        with patch.dict('sys.modules', {'pytds': fake_pytds}):
            with self.assertRaises(DatabaseConnectionError):
                connection.connect()

    def test_unknown_client(self):
        with self.assertRaises(ValueError):
            SqlServerConnection(CONFIG, client='jdbc')


if __name__ == '__main__':
    unittest.main()
