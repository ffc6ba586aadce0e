from pydantic import BaseModel, ConfigDict, Field


class Address(BaseModel):
    """Postal address snapshot stored on the order."""

    model_config = ConfigDict(frozen=True)

    street: str = Field(min_length=1)
    locality: str = ""
    region: str = ""
    postcode: str = ""
    country: str = "Australia"

    def single_line(self) -> str:
        """``"1 George St, Sydney, NSW 2000, Australia"``; empty parts are skipped."""
        parts = [
            self.street.strip(),
            self.locality.strip(),
            f"{self.region.strip()} {self.postcode.strip()}".strip(),
            self.country.strip(),
        ]
        return ", ".join(p for p in parts if p)
