import pytest

from guias import catalog
from guias.database import (
    SessionLocal,
    VistaCampo,
    VistaCuartel,
    VistaEmpleado,
    VistaEquipo,
    VistaJiron,
    VistaTransportista,
)
from guias.errors import InvalidInputError


@pytest.fixture
def reference_data():
    session = SessionLocal()
    try:
        session.add_all(
            [
                VistaCampo(campo="CA01", desc_campo="SANTA ROSA NORTE"),
                VistaCampo(campo="CA02", desc_campo="SANTA ROSA SUR"),
                VistaCampo(campo="CB01", desc_campo=None),
                VistaJiron(campo="CA01", jiron="J2"),
                VistaJiron(campo="CA01", jiron="J1"),
                VistaJiron(campo="CB01", jiron="J9"),
                VistaCuartel(campo="CA01", jiron="J1", cuartel="Q2"),
                VistaCuartel(campo="CA01", jiron="J1", cuartel="Q1"),
                VistaCuartel(campo="CB01", jiron="J9", cuartel="Q7"),
                VistaTransportista(cod_transp=10, transportista="TRANSPORTES ANDINOS", ruc="20123456789"),
                VistaTransportista(cod_transp=11, transportista=None, ruc=None),
                VistaEmpleado(codigo=1, empleado="PEREZ JUAN", dni="44556677", cd_transp=10),
                VistaEmpleado(codigo=2, empleado="ALVAREZ ANA", dni="11223344", cd_transp=10),
                VistaEquipo(cod_equipo=5, placa="ABC-123", cod_transp=10, tip_equipo="CAMION"),
                VistaEquipo(cod_equipo=3, placa="XYZ-987", cod_transp=10, tip_equipo=None),
                VistaEquipo(cod_equipo=4, placa="QQQ-111", cod_transp=11, tip_equipo="TRACTO"),
            ]
        )
        session.commit()
    finally:
        session.close()


def test_campos(reference_data):
    page = catalog.list_campos(page=1, page_size=2)
    assert [c["campo"] for c in page.data] == ["CA01", "CA02"]
    assert page.total_count == 3 and page.has_next

    assert catalog.get_campo(" ca01 ") == {"campo": "CA01", "desc_campo": "SANTA ROSA NORTE"}
    assert catalog.get_campo("ZZ") is None
    assert catalog.get_campo("CB01")["desc_campo"] == ""
    assert catalog.campo_exists("ca02")
    assert not catalog.campo_exists("ZZ")


def test_search_campos_by_description(reference_data):
    found = catalog.search_campos("santa rosa")
    assert [c["campo"] for c in found] == ["CA01", "CA02"]
    assert catalog.search_campos("sur")[0]["campo"] == "CA02"


def test_search_campos_matches_wildcards_literally(reference_data):
    session = SessionLocal()
    try:
        session.add(VistaCampo(campo="CC01", desc_campo="LOTE 100% RIEGO_A"))
        session.commit()
    finally:
        session.close()

    assert catalog.search_campos("%") == [{"campo": "CC01", "desc_campo": "LOTE 100% RIEGO_A"}]
    assert [c["campo"] for c in catalog.search_campos("o_a")] == ["CC01"]
    assert catalog.search_campos("SANTA%SUR") == []
    assert catalog.search_campos("_") == [{"campo": "CC01", "desc_campo": "LOTE 100% RIEGO_A"}]


@pytest.mark.parametrize("value", ["", "   ", "TOOLONG7"])
def test_invalid_campo_codes(value):
    with pytest.raises(InvalidInputError):
        catalog.get_campo(value)


def test_description_length_is_limited():
    with pytest.raises(InvalidInputError):
        catalog.search_campos("X" * 71)


def test_cuarteles_and_jirones(reference_data):
    assert [c["cuartel"] for c in catalog.list_cuarteles(all_records=True).data] == ["Q1", "Q2", "Q7"]
    assert catalog.get_cuartel("Q7") == {"campo": "CB01", "jiron": "J9", "cuartel": "Q7"}
    by_campo = catalog.list_cuarteles_by_campo("ca01")
    assert by_campo.total_count == 2

    assert [j["jiron"] for j in catalog.list_jirones_by_campo("CA01").data] == ["J1", "J2"]
    assert catalog.get_jiron("J9")["campo"] == "CB01"
    assert catalog.list_jirones().total_count == 3


def test_empleados(reference_data):
    assert [e["empleado"] for e in catalog.list_empleados().data] == ["ALVAREZ ANA", "PEREZ JUAN"]
    assert catalog.get_empleado_by_dni("44556677")["codigo"] == 1
    assert catalog.get_empleado_by_name("ALVAREZ ANA")["dni"] == "11223344"
    assert catalog.empleado_exists("2")
    assert not catalog.empleado_exists("99")
    with pytest.raises(InvalidInputError):
        catalog.empleado_exists("abc")


def test_equipos_and_transportistas(reference_data):
    assert [e["cod_equipo"] for e in catalog.list_equipos().data] == [3, 4, 5]
    assert catalog.get_equipo(3)["tip_equipo"] == ""
    assert catalog.get_equipo_by_placa("abc-123")["cod_equipo"] == 5
    assert [e["cod_equipo"] for e in catalog.list_equipos_by_transportista(10)] == [3, 5]

    assert catalog.get_transportista(11) == {"cod_transp": 11, "transportista": "", "ruc": ""}
    assert catalog.get_transportista_by_ruc("20123456789")["cod_transp"] == 10
    assert catalog.get_transportista(404) is None
