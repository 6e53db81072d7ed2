import sqlite3

from settings import DB_NAME


def init_db(db_path=None):
    conn = sqlite3.connect(db_path or DB_NAME)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            deletedAt DATETIME,
            FOREIGN KEY (linkedId) REFERENCES Contact (id),
            CHECK (email IS NOT NULL OR phoneNumber IS NOT NULL),
            CHECK (
                (linkPrecedence = 'primary' AND linkedId IS NULL)
                OR (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
            )
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId)")
    # one row per exact (email, phone) pair
    cursor.execute('''
        CREATE UNIQUE INDEX IF NOT EXISTS ux_contact_email_phone
        ON Contact (email, phoneNumber)
        WHERE email IS NOT NULL AND phoneNumber IS NOT NULL AND deletedAt IS NULL
    ''')
    conn.commit()

    conn.close()


def get_db_connection(db_path=None):
    # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE.
    conn = sqlite3.connect(db_path or DB_NAME, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn
