import json
import logging
import os
import random
import time
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-chain")

STARTING_BALANCE = 10_000
ROUND_SECONDS = float(os.getenv("MOCK_CHAIN_ROUND_SECONDS", "2.8"))
BASE_BET = 40
KICKER_AMOUNT = 20
JACKPOT_AMOUNT = 100_000
BONUS_SPINS_AWARDED = 8
REELS = 5
ROWS = 3
REEL_SYMBOLS = "AAAABBBBCCCDDWEF"
WILD = "W"
# multiplier of the bet per way, by match length
PAYTABLE = {
    "A": {3: 1, 4: 2, 5: 5},
    "B": {3: 1, 4: 3, 5: 8},
    "C": {3: 2, 4: 5, 5: 15},
    "D": {3: 3, 4: 10, 5: 30},
}

DB_URL = os.getenv("MOCK_CHAIN_DB_URL", "sqlite:///./mock_chain.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Chain")


class SpinSubmission(BaseModel):
    address: str
    mode: int
    reference: str
    betAmount: Optional[int] = None
    paylines: Optional[int] = None
    betPerLine: Optional[int] = None


class Funding(BaseModel):
    address: str
    amount: int = 0
    bonusSpins: int = 0


class ScriptedGrid(BaseModel):
    grid: List[List[str]]


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    address = Column(String, unique=True, index=True, nullable=False)
    balance = Column(Integer, nullable=False, default=STARTING_BALANCE)
    credits = Column(Integer, nullable=False, default=0)
    bonus_spins = Column(Integer, nullable=False, default=0)


class Bet(Base):
    __tablename__ = "bets"
    id = Column(Integer, primary_key=True)
    bet_key = Column(String, unique=True, index=True, nullable=False)
    tx_id = Column(String, nullable=False)
    contract_id = Column(String, nullable=False)
    address = Column(String, index=True, nullable=False)
    reference = Column(String, index=True, nullable=False)
    mode = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    submit_round = Column(Integer, nullable=False)
    claim_round = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    reason = Column(String, nullable=True)
    grid = Column(Text, nullable=True)
    payout = Column(Integer, nullable=False, default=0)
    ways_wins = Column(Text, nullable=True)
    bonus_spins_awarded = Column(Integer, nullable=False, default=0)
    jackpot_hit = Column(Boolean, nullable=False, default=False)
    jackpot_amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)

_scripted_grids: List[List[List[str]]] = []


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_round() -> int:
    return int(time.time() / ROUND_SECONDS) if ROUND_SECONDS > 0 else 0


def _get_account(db: Session, address: str) -> Account:
    account = db.query(Account).filter(Account.address == address).first()
    if not account:
        account = Account(address=address, balance=STARTING_BALANCE, credits=0, bonus_spins=0)
        db.add(account)
        db.commit()
        db.refresh(account)
    return account


def _draw_grid(bet_key: str) -> List[List[str]]:
    if _scripted_grids:
        return _scripted_grids.pop(0)
    rng = random.Random(bet_key)
    return [[rng.choice(REEL_SYMBOLS) for _ in range(ROWS)] for _ in range(REELS)]


def _ways_wins(grid: List[List[str]], bet_amount: int) -> List[dict]:
    wins = []
    for symbol, pays in PAYTABLE.items():
        ways = 1
        length = 0
        for reel in grid:
            hits = sum(1 for cell in reel if cell in (symbol, WILD))
            if hits == 0:
                break
            ways *= hits
            length += 1
        if length >= 3 and symbol in grid[0]:
            payout = ways * pays[min(length, 5)] * bet_amount // BASE_BET
            wins.append({"symbol": symbol, "ways": ways, "matchLength": length, "payout": payout, "wildMultiplier": 1})
    return wins


def _settle(db: Session, bet: Bet) -> None:
    grid = _draw_grid(bet.bet_key)
    cells = [cell for reel in grid for cell in reel]
    # bonus spins pay as if staked at the base bet
    stake = bet.amount if bet.amount else BASE_BET
    wins = _ways_wins(grid, stake)
    payout = sum(w["payout"] for w in wins)
    jackpot_hit = cells.count("E") >= 3
    if jackpot_hit:
        bet.jackpot_hit = True
        bet.jackpot_amount = JACKPOT_AMOUNT
        payout += JACKPOT_AMOUNT
    if cells.count("F") >= 2:
        bet.bonus_spins_awarded = BONUS_SPINS_AWARDED
    bet.grid = json.dumps(grid)
    bet.ways_wins = json.dumps(wins)
    bet.payout = payout
    bet.status = "confirmed"
    account = _get_account(db, bet.address)
    account.balance += payout
    account.bonus_spins += bet.bonus_spins_awarded
    db.add(account)
    db.add(bet)
    db.commit()
    logger.info(
        "Settled bet betKey=%s reference=%s payout=%s jackpot=%s bonusSpins=%s",
        bet.bet_key,
        bet.reference,
        payout,
        jackpot_hit,
        bet.bonus_spins_awarded,
    )


def _serialize_bet(bet: Bet) -> dict:
    return {
        "betKey": bet.bet_key,
        "status": bet.status,
        "reason": bet.reason,
        "grid": json.loads(bet.grid) if bet.grid else None,
        "payout": bet.payout,
        "waysWins": json.loads(bet.ways_wins) if bet.ways_wins else None,
        "bonusSpinsAwarded": bet.bonus_spins_awarded,
        "jackpotHit": bet.jackpot_hit,
        "jackpotAmount": bet.jackpot_amount,
    }


@app.get("/v1/machines/{contract_id}/config")
async def machine_config(contract_id: str):
    return {
        "contractId": contract_id,
        "variant": "ways",
        "minBet": BASE_BET,
        "maxBet": BASE_BET + KICKER_AMOUNT,
        "maxPaylines": 20,
        "baseBet": BASE_BET,
        "kickerAmount": KICKER_AMOUNT,
        "rtpTarget": 96.5,
        "houseEdge": 3.5,
        "modeEnabled": 7,
        "jackpotAmount": JACKPOT_AMOUNT,
    }


@app.post("/v1/machines/{contract_id}/spins")
async def submit_spin(contract_id: str, body: SpinSubmission, db: Session = Depends(get_db)):
    logger.info(
        "Received spin contract=%s address=%s reference=%s mode=%s betAmount=%s",
        contract_id,
        body.address,
        body.reference,
        body.mode,
        body.betAmount,
    )
    amount = body.betAmount if body.betAmount is not None else (body.paylines or 0) * (body.betPerLine or 0)
    account = _get_account(db, body.address)
    if body.mode == 0:
        if account.bonus_spins <= 0:
            raise HTTPException(status_code=400, detail="no bonus spins left")
        account.bonus_spins -= 1
        amount = 0
    else:
        if account.balance < amount:
            logger.warning("Rejected spin reference=%s balance=%s amount=%s", body.reference, account.balance, amount)
            raise HTTPException(status_code=400, detail=f"balance {account.balance} below bet {amount}")
        account.balance -= amount
    submit_round = current_round()
    bet = Bet(
        bet_key=uuid.uuid4().hex,
        tx_id=uuid.uuid4().hex.upper(),
        contract_id=contract_id,
        address=body.address,
        reference=body.reference,
        mode=body.mode,
        amount=amount,
        submit_round=submit_round,
        claim_round=submit_round + 1,
    )
    db.add(account)
    db.add(bet)
    db.commit()
    return {"txId": bet.tx_id, "betKey": bet.bet_key, "submitRound": bet.submit_round, "claimRound": bet.claim_round}


@app.get("/v1/spins/{bet_key}")
async def spin_status(bet_key: str, db: Session = Depends(get_db)):
    bet = db.query(Bet).filter(Bet.bet_key == bet_key).first()
    if not bet:
        raise HTTPException(status_code=404, detail="unknown bet")
    if bet.status == "pending" and (ROUND_SECONDS <= 0 or current_round() >= bet.claim_round):
        _settle(db, bet)
    return _serialize_bet(bet)


@app.get("/v1/accounts/{address}/balance")
async def account_balance(address: str, db: Session = Depends(get_db)):
    account = _get_account(db, address)
    return {"address": address, "balance": account.balance}


@app.get("/v1/machines/{contract_id}/accounts/{address}/credits")
async def account_credits(contract_id: str, address: str, db: Session = Depends(get_db)):
    account = _get_account(db, address)
    return {"address": address, "credits": account.credits, "bonusSpins": account.bonus_spins}


@app.get("/v1/bets")
async def list_bets(db: Session = Depends(get_db)):
    bets: List[Bet] = db.query(Bet).order_by(Bet.created_at).all()
    logger.info("Listing %s bets", len(bets))
    return [dict(_serialize_bet(b), reference=b.reference, address=b.address) for b in bets]


@app.post("/admin/fund")
async def fund(body: Funding, db: Session = Depends(get_db)):
    account = _get_account(db, body.address)
    account.balance += body.amount
    account.bonus_spins += body.bonusSpins
    db.add(account)
    db.commit()
    logger.info("Funded address=%s amount=%s bonusSpins=%s", body.address, body.amount, body.bonusSpins)
    return {"address": body.address, "balance": account.balance, "bonusSpins": account.bonus_spins}


@app.post("/admin/script-grid")
async def script_grid(body: ScriptedGrid):
    """
    Queue a grid for the next settled bet.
    """
    _scripted_grids.append(body.grid)
    return {"queued": len(_scripted_grids)}


@app.post("/admin/reject/{bet_key}")
async def reject_bet(bet_key: str, reason: str = "rejected by network", db: Session = Depends(get_db)):
    bet = db.query(Bet).filter(Bet.bet_key == bet_key).first()
    if not bet:
        raise HTTPException(status_code=404, detail="unknown bet")
    if bet.status != "pending":
        raise HTTPException(status_code=409, detail=f"bet already {bet.status}")
    account = _get_account(db, bet.address)
    if bet.mode == 0:
        account.bonus_spins += 1
    else:
        account.balance += bet.amount
    bet.status = "rejected"
    bet.reason = reason
    db.add(account)
    db.add(bet)
    db.commit()
    logger.warning("Rejected bet betKey=%s reason=%s", bet_key, reason)
    return _serialize_bet(bet)


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all mock chain accounts and bets.
    """
    db.query(Bet).delete()
    db.query(Account).delete()
    db.commit()
    _scripted_grids.clear()
    logger.warning("Cleared mock chain data via admin endpoint")
    return {"status": "cleared"}


@app.get("/health")
async def health():
    return {"status": "ok", "round": current_round()}
