from typing import Any, Dict
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Base des schémas de l'API: attributs snake_case côté Python, JSON camelCase côté HTTP.
    - populate_by_name: accepte aussi les noms Python (tests, appels internes).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
