"""Seed database with sample FHIR and CCDA clinical documents. Drop-and-recreate tables on each run."""

from __future__ import annotations

import asyncio

from clinical_rag.database import async_session, engine
from clinical_rag.models.orm import Base, ClinicalDocumentRecord

USER_ID = "demo-user"
CONNECTION_ID = "demo-portal"

CCDA_SUMMARY = """\
<ClinicalDocument xmlns="urn:hl7-org:v3">
  <templateId root="2.16.840.1.113883.10.20.22.1.2"/>
  <title>Continuity of Care Document</title>
  <component>
    <structuredBody>
      <component>
        <section>
          <templateId root="2.16.840.1.113883.10.20.22.2.6.1"/>
          <title>Allergies</title>
          <text>
            <table>
              <tr><th>Substance</th><th>Reaction</th><th>Status</th></tr>
              <tr><td>Penicillin</td><td>Hives</td><td>Active</td></tr>
            </table>
          </text>
        </section>
      </component>
      <component>
        <section>
          <templateId root="2.16.840.1.113883.10.20.22.2.1.1"/>
          <title>Medications</title>
          <text>
            <list>
              <item>Metformin 1000 mg tablet, twice daily</item>
              <item>Lisinopril 20 mg tablet, once daily</item>
            </list>
          </text>
        </section>
      </component>
      <component>
        <section>
          <templateId root="2.16.840.1.113883.10.20.22.2.5.1"/>
          <title>Problems</title>
          <text>
            <list>
              <item>Type 2 diabetes mellitus, onset 2015</item>
              <item>Essential hypertension, onset 2018</item>
            </list>
          </text>
        </section>
      </component>
    </structuredBody>
  </component>
</ClinicalDocument>
"""


def _observation(
    doc_id: str, source_id: str, date: str, name: str, loinc: str, value: float, unit: str
) -> ClinicalDocumentRecord:
    return ClinicalDocumentRecord(
        id=doc_id,
        user_id=USER_ID,
        connection_record_id=CONNECTION_ID,
        raw={
            "fullUrl": f"https://portal.example.org/fhir/Observation/{source_id}",
            "resource": {
                "resourceType": "Observation",
                "id": source_id,
                "status": "final",
                "code": {
                    "text": name,
                    "coding": [{"system": "http://loinc.org", "code": loinc, "display": name}],
                },
                "effectiveDateTime": date,
                "valueQuantity": {"value": value, "unit": unit},
            },
        },
        content_type="application/json",
        resource_type="Observation",
        source_id=source_id,
        date=date,
        display_name=name,
        codes=[loinc],
    )


DOCUMENTS = [
    _observation("obs-a1c-2024", "a1c-2024", "2024-01-15", "Hemoglobin A1c", "4548-4", 7.2, "%"),
    _observation("obs-a1c-2023", "a1c-2023", "2023-07-10", "Hemoglobin A1c", "4548-4", 7.8, "%"),
    _observation("obs-egfr-2024", "egfr-2024", "2024-01-15", "eGFR", "33914-3", 45, "mL/min/1.73m2"),
    ClinicalDocumentRecord(
        id="report-bmp-2024",
        user_id=USER_ID,
        connection_record_id=CONNECTION_ID,
        raw={
            "resource": {
                "resourceType": "DiagnosticReport",
                "id": "bmp-2024",
                "status": "final",
                "code": {"text": "Basic metabolic panel"},
                "effectiveDateTime": "2024-01-15",
                "result": [{"reference": "Observation/egfr-2024"}],
            }
        },
        content_type="application/json",
        resource_type="DiagnosticReport",
        source_id="bmp-2024",
        date="2024-01-15",
        display_name="Basic metabolic panel",
    ),
    ClinicalDocumentRecord(
        id="ccda-summary-2024",
        user_id=USER_ID,
        connection_record_id=CONNECTION_ID,
        raw=CCDA_SUMMARY,
        format="CCDA",
        content_type="application/xml",
        resource_type="DocumentReference",
        date="2024-02-01",
        display_name="Continuity of Care Document",
    ),
]


async def main() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        session.add_all(DOCUMENTS)
        await session.commit()

    print(f"Seeded {len(DOCUMENTS)} clinical documents for user {USER_ID!r}.")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
