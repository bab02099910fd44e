"""Shared fixtures for the fiscal import test suite."""

import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from core.observability.metrics import MetricsCollector
from ledger.db import LedgerStore


ACCESS_KEY = "35240112345678000190550010000012341000012345"


def build_nfe_xml(
    number: Optional[str] = "1234",
    access_key: Optional[str] = ACCESS_KEY,
    cnpj: Optional[str] = "12345678000190",
    legal_name: Optional[str] = "Papelaria Central LTDA",
    trade_name: Optional[str] = "Papelaria Central",
    total: Optional[str] = "300.00",
    issue_date: Optional[str] = "2024-01-15T10:30:00-03:00",
    dups: Optional[List[Tuple[str, str, Optional[str]]]] = None,
    namespace: bool = True,
    wrap: bool = True,
) -> bytes:
    """Build an NF-e document; ``dups`` entries are (nDup, vDup, dVenc)."""
    ns = ' xmlns="http://www.portalfiscal.inf.br/nfe"' if namespace else ""
    id_attr = f' Id="NFe{access_key}"' if access_key else ""

    ide = "<ide>"
    if number is not None:
        ide += f"<nNF>{number}</nNF>"
    if issue_date is not None:
        ide += f"<dhEmi>{issue_date}</dhEmi>"
    ide += "</ide>"

    emit = "<emit>"
    if cnpj is not None:
        emit += f"<CNPJ>{cnpj}</CNPJ>"
    if legal_name is not None:
        emit += f"<xNome>{legal_name}</xNome>"
    if trade_name is not None:
        emit += f"<xFant>{trade_name}</xFant>"
    emit += "</emit>"

    total_block = f"<total><ICMSTot><vNF>{total}</vNF></ICMSTot></total>" if total is not None else ""

    cobr = ""
    if dups:
        cobr = "<cobr>"
        for n_dup, v_dup, d_venc in dups:
            cobr += f"<dup><nDup>{n_dup}</nDup>"
            if d_venc:
                cobr += f"<dVenc>{d_venc}</dVenc>"
            cobr += f"<vDup>{v_dup}</vDup></dup>"
        cobr += "</cobr>"

    nfe = f"<NFe{ns}><infNFe{id_attr} versao=\"4.00\">{ide}{emit}{total_block}{cobr}</infNFe></NFe>"
    if wrap:
        nfe = f"<nfeProc{ns} versao=\"4.00\">{nfe}</nfeProc>"
    return f'<?xml version="1.0" encoding="UTF-8"?>{nfe}'.encode("utf-8")


@pytest.fixture
def store(tmp_path) -> LedgerStore:
    ledger = LedgerStore(tmp_path / "ledger.db")
    ledger.init_db()
    return ledger


@pytest.fixture(autouse=True)
def reset_metrics():
    MetricsCollector.instance().reset()
    yield
