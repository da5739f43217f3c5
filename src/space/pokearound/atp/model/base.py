from sqlalchemy import JSON, String, Text, orm
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str512 = Annotated[str, 512]
str1024 = Annotated[str, 1024]
textstr = Annotated[str, "text"]
idpk = Annotated[int, mapped_column(primary_key=True, autoincrement=True)]

# Arrays are native on PostgreSQL and stored as JSON elsewhere (SQLite in tests).
StringList = JSON().with_variant(postgresql.ARRAY(String(512)), "postgresql")


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        str1024: String(1024),
        textstr: Text(),
    }
