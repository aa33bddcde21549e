from datetime import datetime

from sqlalchemy import DateTime, String, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str512 = Annotated[str, 512]
str2048 = Annotated[str, 2048]
ulidpk = Annotated[str, mapped_column(String(26), primary_key=True)]
timestamptz = Annotated[datetime, mapped_column(DateTime(timezone=True))]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        str2048: String(2048),
    }
