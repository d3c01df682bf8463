import unittest

from pyazimport.catalog import ObjectType, ScriptUnit, SkipReason
from pyazimport.policy import FileGroupLayout
from pyazimport.transforms import (AUTO_REMAP, REMOVE_TO_PRIMARY, FileGroupInventory,
                                   PipelineOptions, TransformationPipeline, find_filegroup_references,
                                   remove_encrypted_with, remove_to_primary,
                                   resolve_filegroup_variables, strip_always_encrypted,
                                   strip_filestream)


DOCUMENTS_TABLE = """CREATE TABLE [dbo].[Documents](
    [DocumentId] [uniqueidentifier] ROWGUIDCOL NOT NULL,
    [FileName] [nvarchar](255) NOT NULL,
    [Content] [varbinary](max) FILESTREAM NULL,
    [CreatedDate] [datetime2](7) NOT NULL,
    CONSTRAINT [PK_Documents] PRIMARY KEY CLUSTERED ([DocumentId] ASC)
) ON [FG_DATA] FILESTREAM_ON [FG_FILESTREAM];
GO
"""

PARTITIONED_TABLE = """CREATE TABLE [Sales].[OrderHistory](
\t[OrderHistoryId] [int] IDENTITY(1,1) NOT NULL,
\t[OrderDate] [datetime] NOT NULL,
 CONSTRAINT [PK_OrderHistory] PRIMARY KEY CLUSTERED
(
\t[OrderHistoryId] ASC,
\t[OrderDate] ASC
)WITH (PAD_INDEX = OFF, ALLOW_PAGE_LOCKS = ON) ON [PS_OrderYear]([OrderDate])
) ON [PS_OrderYear]([OrderDate])
GO
"""

SECURITY_POLICY = """CREATE SECURITY POLICY [Sales].[TenantSecurityPolicy]
ADD FILTER PREDICATE [dbo].[fn_TenantAccessPredicate]([TenantId]) ON [Sales].[Orders],
ADD BLOCK PREDICATE [dbo].[fn_TenantAccessPredicate]([TenantId]) ON [Sales].[Orders] AFTER INSERT
WITH (STATE = OFF, SCHEMABINDING = ON)
GO
"""

FILEGROUPS_WITH_FILESTREAM = """-- FileGroups and Files

-- FileGroup: FG_DATA
ALTER DATABASE CURRENT ADD FILEGROUP [FG_DATA];
GO

ALTER DATABASE CURRENT ADD FILE (
    NAME = N'TestDb_Data',
    FILENAME = N'$(FG_DATA_PATH_FILE)',
    SIZE = $(FG_DATA_SIZE)
    , FILEGROWTH = $(FG_DATA_GROWTH)
    , MAXSIZE = UNLIMITED
) TO FILEGROUP [FG_DATA];
GO

-- FileGroup: FG_FILESTREAM
ALTER DATABASE CURRENT ADD FILEGROUP [FG_FILESTREAM] CONTAINS FILESTREAM;
GO

ALTER DATABASE CURRENT ADD FILE (
    NAME = N'TestDb_FileStream',
    FILENAME = N'$(FG_FILESTREAM_PATH_FILE)'
) TO FILEGROUP [FG_FILESTREAM];
GO
"""

FILEGROUPS_WITH_MEMORY_OPTIMIZED = """ALTER DATABASE CURRENT ADD FILEGROUP [FG_DATA];
GO
ALTER DATABASE CURRENT ADD FILE (NAME = N'TestDb_Data', FILENAME = N'$(FG_DATA_PATH_FILE)') TO FILEGROUP [FG_DATA];
GO
ALTER DATABASE CURRENT ADD FILEGROUP [FG_MOD] CONTAINS MEMORY_OPTIMIZED_DATA;
GO
ALTER DATABASE CURRENT ADD FILE (NAME = N'TestDb_Mod', FILENAME = N'$(FG_MOD_PATH_FILE)') TO FILEGROUP [FG_MOD];
GO
"""

MULTI_LINE_ENCRYPTED = """CREATE TABLE [dbo].[MultiLineEncrypted](
\t[Id] [int] IDENTITY(1,1) NOT NULL,
\t[TaxId] [varchar](20) COLLATE Latin1_General_BIN2
\t\tENCRYPTED WITH (
\t\t\tCOLUMN_ENCRYPTION_KEY = [CEK_SSN],
\t\t\tENCRYPTION_TYPE = Deterministic,
\t\t\tALGORITHM = 'AEAD_AES_256_CBC_HMAC_SHA_256'
\t\t) NOT NULL,
\t[Notes] [nvarchar](500) NULL,
\tCONSTRAINT [PK_MultiLineEncrypted] PRIMARY KEY CLUSTERED ([Id] ASC)
) ON [PRIMARY];
GO
"""

COLUMN_KEYS = """CREATE COLUMN MASTER KEY [CMK1] WITH (KEY_STORE_PROVIDER_NAME = N'MSSQL_CERTIFICATE_STORE', KEY_PATH = N'CurrentUser/My/AB12')
GO
CREATE COLUMN ENCRYPTION KEY [CEK1] WITH VALUES (COLUMN_MASTER_KEY = [CMK1], ALGORITHM = 'RSA_OAEP', ENCRYPTED_VALUE = 0x016E)
GO
"""


def make_unit(content, object_type=ObjectType.TABLE, path='09_Tables_PrimaryKey/dbo.T.sql'):
    return ScriptUnit(path=path, phase=9, sub_phase=0, object_type=object_type,
                      schema='dbo', name='T', raw_content=content)


class RemoveToPrimaryTestCase(unittest.TestCase):
    def test_rewrites_filegroup_storage_clause(self):
        self.assertEqual(remove_to_primary("CREATE TABLE t (id int) ON [FG_ARCHIVE]"),
                         "CREATE TABLE t (id int) ON [PRIMARY]")

    def test_leaves_primary_unchanged(self):
        sql = "CREATE TABLE t (id int) ON [PRIMARY]"
        self.assertEqual(remove_to_primary(sql), sql)

    def test_never_rewrites_partition_scheme_reference(self):
        self.assertEqual(remove_to_primary(PARTITIONED_TABLE), PARTITIONED_TABLE)
        sql = "CREATE INDEX IX ON [dbo].[T] ([Col]) ON [PS_X]([Col])"
        self.assertEqual(remove_to_primary(sql), sql)
        sql = "CREATE INDEX IX ON [dbo].[T] ([Col]) ON [PS_X] ([Col])"
        self.assertEqual(remove_to_primary(sql), sql)

    def test_leaves_schema_qualified_objects_alone(self):
        self.assertEqual(remove_to_primary(SECURITY_POLICY), SECURITY_POLICY)

    def test_textimage_and_filestream_targets(self):
        sql = "CREATE TABLE t (b varbinary(max)) ON [FG_DATA] TEXTIMAGE_ON [FG_LOB]"
        self.assertEqual(remove_to_primary(sql),
                         "CREATE TABLE t (b varbinary(max)) ON [PRIMARY] TEXTIMAGE_ON [PRIMARY]")
        self.assertIn(") ON [PRIMARY] FILESTREAM_ON [PRIMARY];", remove_to_primary(DOCUMENTS_TABLE))

    def test_partition_scheme_body_collapses(self):
        sql = ("CREATE PARTITION SCHEME [PS_OrderYear] AS PARTITION [PF_OrderYear] "
               "TO ([FG_ARCHIVE], [FG_CURRENT], [PRIMARY])")
        self.assertEqual(remove_to_primary(sql),
                         "CREATE PARTITION SCHEME [PS_OrderYear] AS PARTITION [PF_OrderYear] ALL TO ([PRIMARY])")
        sql = "CREATE PARTITION SCHEME [PS] AS PARTITION [PF] ALL TO ([FG_ARCHIVE])"
        self.assertEqual(remove_to_primary(sql),
                         "CREATE PARTITION SCHEME [PS] AS PARTITION [PF] ALL TO ([PRIMARY])")

    def test_partition_scheme_already_primary_is_unchanged(self):
        for sql in ("CREATE PARTITION SCHEME [PS] AS PARTITION [PF] ALL TO ([primary])",
                    "CREATE PARTITION SCHEME [PS] AS PARTITION [PF] TO ([PRIMARY], [PRIMARY])"):
            self.assertEqual(remove_to_primary(sql), sql)

    def test_memory_optimized_filegroups_are_exempt(self):
        sql = "CREATE TABLE t (id int) ON [FG_MOD]"
        self.assertEqual(remove_to_primary(sql, exempt={'fg_mod'}), sql)

    def test_idempotent(self):
        for sql in (DOCUMENTS_TABLE, PARTITIONED_TABLE, SECURITY_POLICY,
                    "CREATE PARTITION SCHEME [PS] AS PARTITION [PF] TO ([FG1],[FG2])"):
            once = remove_to_primary(sql)
            self.assertEqual(remove_to_primary(once), once)


class FileGroupReferencesTestCase(unittest.TestCase):
    def test_collects_storage_targets(self):
        sql = "CREATE TABLE t (b varbinary(max)) ON [FG_DATA] TEXTIMAGE_ON [FG_LOB]"
        self.assertEqual(find_filegroup_references(sql), ['FG_DATA', 'FG_LOB'])

    def test_partition_scheme_body_targets(self):
        sql = "CREATE PARTITION SCHEME [PS] AS PARTITION [PF] TO ([FG_ARCHIVE], [FG_CURRENT], [PRIMARY])"
        self.assertEqual(find_filegroup_references(sql), ['FG_ARCHIVE', 'FG_CURRENT'])

    def test_ignores_primary_and_partition_references(self):
        self.assertEqual(find_filegroup_references(PARTITIONED_TABLE), [])
        self.assertEqual(find_filegroup_references(SECURITY_POLICY), [])
        self.assertEqual(find_filegroup_references("CREATE TABLE t (id int) ON [PRIMARY]"), [])


class StripFilestreamTestCase(unittest.TestCase):
    def test_table_keeps_column_without_filestream(self):
        stripped = strip_filestream(DOCUMENTS_TABLE)
        self.assertIn("[Content] [varbinary](max) NULL,", stripped)
        self.assertIn(") ON [FG_DATA];", stripped)
        self.assertNotIn("FILESTREAM", stripped)
        self.assertIn("ROWGUIDCOL", stripped)

    def test_filestream_on_default(self):
        sql = 'CREATE TABLE t (c varbinary(max) FILESTREAM NULL) ON [PRIMARY] FILESTREAM_ON "DEFAULT"'
        self.assertEqual(strip_filestream(sql), 'CREATE TABLE t (c varbinary(max) NULL) ON [PRIMARY]')

    def test_filestream_filegroup_blocks_are_dropped(self):
        stripped = strip_filestream(FILEGROUPS_WITH_FILESTREAM)
        self.assertIn("ADD FILEGROUP [FG_DATA]", stripped)
        self.assertIn("TO FILEGROUP [FG_DATA]", stripped)
        self.assertNotIn("FG_FILESTREAM", stripped)

    def test_idempotent(self):
        for sql in (DOCUMENTS_TABLE, FILEGROUPS_WITH_FILESTREAM):
            once = strip_filestream(sql)
            self.assertEqual(strip_filestream(once), once)


class StripAlwaysEncryptedTestCase(unittest.TestCase):
    def test_single_line_clause(self):
        sql = ("CREATE TABLE [dbo].[People](\n"
               "    [SSN] [char](11) ENCRYPTED WITH (COLUMN_ENCRYPTION_KEY = [CEK1], "
               "ENCRYPTION_TYPE = Randomized, ALGORITHM = 'AEAD_AES_256_CBC_HMAC_SHA_256') NULL,\n"
               "    [Name] [nvarchar](50) NULL\n"
               ")\n")
        self.assertEqual(remove_encrypted_with(sql),
                         "CREATE TABLE [dbo].[People](\n"
                         "    [SSN] [char](11) NULL,\n"
                         "    [Name] [nvarchar](50) NULL\n"
                         ")\n")

    def test_multi_line_clause(self):
        stripped = remove_encrypted_with(MULTI_LINE_ENCRYPTED)
        self.assertIn("\t[TaxId] [varchar](20) COLLATE Latin1_General_BIN2 NOT NULL,\n\t[Notes]", stripped)
        self.assertNotIn("ENCRYPTED WITH", stripped)
        self.assertNotIn("CEK_SSN", stripped)
        self.assertNotIn(",,", stripped.replace(' ', '').replace('\n', '').replace('\t', ''))

    def test_clause_last_in_column(self):
        sql = "    [Card] varchar(20) NOT NULL ENCRYPTED WITH (COLUMN_ENCRYPTION_KEY = [CEK1], ENCRYPTION_TYPE = Randomized),\n"
        self.assertEqual(remove_encrypted_with(sql), "    [Card] varchar(20) NOT NULL,\n")

    def test_parentheses_inside_literals(self):
        sql = "[X] int ENCRYPTED WITH (ALGORITHM = 'weird)name', COLUMN_ENCRYPTION_KEY = [K]) NULL"
        self.assertEqual(remove_encrypted_with(sql), "[X] int NULL")

    def test_column_key_batches_removed(self):
        self.assertEqual(strip_always_encrypted(COLUMN_KEYS), '')

    def test_idempotent(self):
        once = strip_always_encrypted(MULTI_LINE_ENCRYPTED)
        self.assertEqual(strip_always_encrypted(once), once)


class FileGroupVariablesTestCase(unittest.TestCase):
    def test_paths_and_sizes_from_layout(self):
        inventory = FileGroupInventory()
        inventory.scan(FILEGROUPS_WITH_FILESTREAM)
        layout = FileGroupLayout(default_directory='/var/opt/mssql/data/', inventory=inventory,
                                 size_overrides={'FG_DATA': {'size': '1GB', 'growth': '256MB'}})
        resolved = resolve_filegroup_variables(FILEGROUPS_WITH_FILESTREAM, layout)
        self.assertIn("FILENAME = N'/var/opt/mssql/data/TestDb_Data.ndf'", resolved)
        self.assertIn("SIZE = 1GB", resolved)
        self.assertIn("FILEGROWTH = 256MB", resolved)
        # FILESTREAM containers are folders
        self.assertIn("FILENAME = N'/var/opt/mssql/data/TestDb_FileStream'", resolved)

    def test_path_mapping_wins_over_default_directory(self):
        layout = FileGroupLayout(default_directory='/data', path_mapping={'fg_data': 'D:\\SQLData'})
        resolved = resolve_filegroup_variables(FILEGROUPS_WITH_FILESTREAM, layout)
        self.assertIn("FILENAME = N'D:\\SQLData\\TestDb_Data.ndf'", resolved)
        self.assertIn("SIZE = 64MB", resolved)

    def test_unknown_directory_leaves_placeholder(self):
        layout = FileGroupLayout(default_directory=None)
        resolved = resolve_filegroup_variables(FILEGROUPS_WITH_FILESTREAM, layout)
        self.assertIn("$(FG_DATA_PATH_FILE)", resolved)


class PipelineTestCase(unittest.TestCase):
    def test_remove_to_primary_applies_to_tables(self):
        pipeline = TransformationPipeline(PipelineOptions(filegroup_strategy=REMOVE_TO_PRIMARY),
                                          FileGroupInventory())
        unit = make_unit(DOCUMENTS_TABLE)
        self.assertIsNone(pipeline.rewrite(unit))
        self.assertIn(") ON [PRIMARY] FILESTREAM_ON [PRIMARY];", unit.raw_content)

    def test_auto_remap_leaves_tables_alone(self):
        pipeline = TransformationPipeline(PipelineOptions(filegroup_strategy=AUTO_REMAP),
                                          FileGroupInventory())
        unit = make_unit(DOCUMENTS_TABLE)
        self.assertIsNone(pipeline.rewrite(unit))
        self.assertEqual(unit.raw_content, DOCUMENTS_TABLE)

    def test_filegroup_script_reduced_to_memory_optimized(self):
        unit = make_unit(FILEGROUPS_WITH_MEMORY_OPTIMIZED, ObjectType.FILE_GROUP, '00_FileGroups/001_FileGroups.sql')
        inventory = FileGroupInventory.discover([unit])
        layout = FileGroupLayout(default_directory='/var/opt/mssql/data', inventory=inventory)
        options = PipelineOptions(filegroup_strategy=REMOVE_TO_PRIMARY, memory_optimized_filegroups_only=True)
        pipeline = TransformationPipeline(options, inventory, layout)
        self.assertIsNone(pipeline.rewrite(unit))
        self.assertNotIn("[FG_DATA]", unit.raw_content)
        self.assertIn("ADD FILEGROUP [FG_MOD] CONTAINS MEMORY_OPTIMIZED_DATA", unit.raw_content)
        self.assertIn("FILENAME = N'/var/opt/mssql/data/TestDb_Mod'", unit.raw_content)

    def test_filegroup_script_without_memory_optimized_is_skipped(self):
        unit = make_unit(FILEGROUPS_WITH_FILESTREAM, ObjectType.FILE_GROUP, '00_FileGroups/001_FileGroups.sql')
        options = PipelineOptions(filegroup_strategy=REMOVE_TO_PRIMARY, memory_optimized_filegroups_only=True,
                                  empty_filegroup_reason=SkipReason.DEV_MODE_FILE_GROUP)
        pipeline = TransformationPipeline(options, FileGroupInventory.discover([unit]))
        self.assertEqual(pipeline.rewrite(unit), SkipReason.DEV_MODE_FILE_GROUP)

    def test_filestream_only_filegroup_script_is_skipped(self):
        content = ("ALTER DATABASE CURRENT ADD FILEGROUP [FG_FS] CONTAINS FILESTREAM;\nGO\n"
                   "ALTER DATABASE CURRENT ADD FILE (NAME = N'fs', FILENAME = N'/fs') TO FILEGROUP [FG_FS];\nGO\n")
        unit = make_unit(content, ObjectType.FILE_GROUP, '00_FileGroups/001_FileGroups.sql')
        options = PipelineOptions(filegroup_strategy=AUTO_REMAP, strip_filestream=True)
        pipeline = TransformationPipeline(options, FileGroupInventory.discover([unit]))
        self.assertEqual(pipeline.rewrite(unit), SkipReason.DEV_MODE_FILE_STREAM)

    def test_column_key_unit_is_skipped(self):
        unit = make_unit(COLUMN_KEYS, ObjectType.SECURITY, '01_Security/CMK1.sql')
        pipeline = TransformationPipeline(PipelineOptions(strip_always_encrypted=True), FileGroupInventory())
        self.assertEqual(pipeline.rewrite(unit), SkipReason.DEV_MODE_ALWAYS_ENCRYPTED)

    def test_comment_only_unit_is_empty(self):
        unit = make_unit("-- nothing to do\nGO\n")
        pipeline = TransformationPipeline(PipelineOptions(), FileGroupInventory())
        self.assertEqual(pipeline.rewrite(unit), SkipReason.EMPTY_SCRIPT)

    def test_apply_marks_skipped_units(self):
        units = [make_unit(DOCUMENTS_TABLE), make_unit("-- empty\n", path='09_Tables_PrimaryKey/dbo.E.sql')]
        pipeline = TransformationPipeline(PipelineOptions(strip_filestream=True), FileGroupInventory())
        self.assertEqual(pipeline.apply(units, workers=2), 1)
        self.assertFalse(units[0].is_skipped)
        self.assertNotIn("FILESTREAM", units[0].raw_content)
        self.assertEqual(units[1].skip_reason, SkipReason.EMPTY_SCRIPT)


if __name__ == '__main__':
    unittest.main()
