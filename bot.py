import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.ext import Application, CommandHandler, ContextTypes

import config
from deal_store import DealStore
from deals import DealService
from disputes import DisputeResolver
from errors import DealError, Forbidden, InvalidRequest
from escrow import EscrowAccountManager
from models import User, is_arbiter
from notifications import TelegramNotifier
from publishing import TelegramPublisher
from scheduler import ReconciliationScheduler
from ton_escrow import TonLedger

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


# =============================================================================
# SERVICE WIRING
# =============================================================================

@dataclass
class Services:
    store: DealStore
    escrow: EscrowAccountManager
    deals: DealService
    disputes: DisputeResolver
    scheduler: ReconciliationScheduler


def build_services(bot, store: DealStore = None, ledger=None, publisher=None,
                   notifier=None, arbiter_ids: List[int] = None,
                   **escrow_options: Any) -> Services:
    """Assemble the deal services around one store, ledger and Telegram bot"""
    store = store or DealStore()
    ledger = ledger or TonLedger()
    publisher = publisher or TelegramPublisher(bot, probe_chat_id=config.VERIFICATION_CHAT_ID)
    notifier = notifier or TelegramNotifier(bot)

    escrow = EscrowAccountManager(store, ledger, arbiter_ids=arbiter_ids, **escrow_options)
    deals = DealService(store, escrow, publisher, notifier, arbiter_ids=arbiter_ids)
    disputes = DisputeResolver(deals, escrow, arbiter_ids=arbiter_ids)
    scheduler = ReconciliationScheduler(deals, escrow, publisher)
    return Services(store=store, escrow=escrow, deals=deals, disputes=disputes, scheduler=scheduler)


services: Optional[Services] = None

# Event loop owned by a daemon thread; Flask handlers submit coroutines to it
_loop: Optional[asyncio.AbstractEventLoop] = None


def configure(new_services: Services):
    global services
    services = new_services


def start_background_loop() -> asyncio.AbstractEventLoop:
    global _loop
    if _loop is None:
        _loop = asyncio.new_event_loop()
        thread = threading.Thread(target=_loop.run_forever, name='deal-loop', daemon=True)
        thread.start()
        logger.info("Background event loop started")
    return _loop


def run_async(coro):
    """Run a coroutine from synchronous Flask code"""
    if _loop is not None:
        return asyncio.run_coroutine_threadsafe(coro, _loop).result()
    return asyncio.run(coro)


# =============================================================================
# FLASK APP AND API ENDPOINTS
# =============================================================================

flask_app = Flask(__name__)


@flask_app.errorhandler(DealError)
def handle_deal_error(error: DealError):
    if error.http_status >= 500:
        logger.error(f"API error {error.kind}: {error.message}")
    return jsonify(error.to_dict()), error.http_status


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _user_from_request() -> User:
    """Resolve the acting user from ``telegram_id`` in the body or query string"""
    telegram_id = _payload().get('telegram_id') or request.args.get('telegram_id')
    if not telegram_id:
        raise InvalidRequest('telegram_id is required')
    try:
        telegram_id = int(telegram_id)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid telegram_id: {telegram_id}")

    user = services.store.get_user_by_telegram_id(telegram_id)
    if not user:
        raise Forbidden('Unknown user, open the bot first')
    return user


def _deal_response(deal) -> Any:
    return jsonify({'success': True, 'deal': deal.to_api_dict()})


# -----------------------------------------------------------------------------
# DEALS API
# -----------------------------------------------------------------------------

@flask_app.route('/api/deals', methods=['POST'])
def api_create_deal():
    """Open a deal from a channel listing or an ad request application"""
    user = _user_from_request()
    data = _payload()
    if data.get('channel_id') is None or data.get('amount') is None:
        raise InvalidRequest('channel_id and amount are required')

    deal = run_async(services.deals.create_deal(
        user,
        channel_id=data['channel_id'],
        amount=data['amount'],
        source_type=data.get('source_type', 'listing'),
        source_id=data.get('source_id'),
        format=data.get('format', 'post'),
        post_duration_hours=data.get('post_duration_hours'),
        scheduled_time=data.get('scheduled_time'),
        brief=data.get('brief'),
        publish_with_image=data.get('publish_with_image', False),
    ))
    return jsonify({'success': True, 'deal': deal.to_api_dict()}), 201


@flask_app.route('/api/deal/<deal_id>', methods=['GET'])
def api_get_deal(deal_id):
    user = _user_from_request()
    return _deal_response(services.deals.get_deal(deal_id, user))


@flask_app.route('/api/deal/<deal_id>/transition', methods=['POST'])
def api_transition_deal(deal_id):
    """
    Transition a deal to a new status.

    Body: {"telegram_id": ..., "status": "creative_submitted", "creative": {...}}
    """
    user = _user_from_request()
    data = _payload()
    target = data.get('status')
    if not target:
        raise InvalidRequest('status is required')

    payload = {k: v for k, v in data.items() if k not in ('telegram_id', 'status')}
    deal = run_async(services.deals.request_transition(deal_id, user, target, payload))
    return _deal_response(deal)


@flask_app.route('/api/deal/<deal_id>/accept', methods=['POST'])
def api_accept_deal(deal_id):
    user = _user_from_request()
    return _deal_response(run_async(services.deals.accept_deal(deal_id, user)))


@flask_app.route('/api/deal/<deal_id>/reject', methods=['POST'])
def api_reject_deal(deal_id):
    user = _user_from_request()
    reason = _payload().get('reason')
    return _deal_response(run_async(services.deals.reject_deal(deal_id, user, reason)))


@flask_app.route('/api/deal/<deal_id>/revision', methods=['POST'])
def api_request_revision(deal_id):
    user = _user_from_request()
    feedback = _payload().get('feedback')
    return _deal_response(run_async(services.deals.request_revision(deal_id, user, feedback)))


@flask_app.route('/api/deal/<deal_id>/check-payment', methods=['POST'])
def api_check_payment(deal_id):
    """Check the escrow for the advertiser's deposit right now"""
    user = _user_from_request()
    wallet_address = _payload().get('advertiser_wallet_address')
    deal = run_async(services.deals.check_payment_now(deal_id, user, wallet_address))
    return _deal_response(deal)


@flask_app.route('/api/deal/<deal_id>/escrow/status', methods=['GET'])
def api_get_escrow_status(deal_id):
    """Escrow wallet status including a fresh balance and funding check"""
    user = _user_from_request()
    services.deals.get_deal(deal_id, user)
    status = run_async(services.escrow.get_escrow_status(deal_id))
    return jsonify({'success': True, 'escrow': status})


@flask_app.route('/api/user/wallet', methods=['POST'])
def api_set_wallet():
    """Set the caller's payout wallet; malformed TON addresses are rejected"""
    user = _user_from_request()
    updated = services.deals.set_payout_wallet(user, _payload().get('wallet_address'))
    return jsonify({
        'success': True,
        'user': {'telegram_id': updated.telegram_id, 'wallet_address': updated.wallet_address},
    })


# -----------------------------------------------------------------------------
# ADMIN API
# -----------------------------------------------------------------------------

@flask_app.route('/api/admin/disputes', methods=['GET'])
def api_list_disputes():
    """Open disputes with party and channel info (arbiters only)"""
    arbiter = _user_from_request()
    disputes = services.disputes.list_disputes(arbiter)
    return jsonify({'success': True, 'disputes': disputes, 'count': len(disputes)})


@flask_app.route('/api/admin/disputes/<deal_id>', methods=['GET'])
def api_get_dispute(deal_id):
    arbiter = _user_from_request()
    return jsonify({'success': True, 'dispute': services.disputes.get_dispute(deal_id, arbiter)})


@flask_app.route('/api/admin/deal/<deal_id>/resolve', methods=['POST'])
def api_resolve_dispute(deal_id):
    """
    Resolve a disputed deal (arbiters only).

    Body: {"telegram_id": ..., "resolution": "refund" | "release", "reason": "..."}
    """
    arbiter = _user_from_request()
    data = _payload()
    result = run_async(services.disputes.resolve(
        deal_id,
        arbiter,
        data.get('resolution'),
        reason=data.get('reason', ''),
        refund_address=data.get('refund_address'),
    ))
    return jsonify({'success': True, 'result': result.to_dict(), 'deal': result.deal.to_api_dict()})


@flask_app.route('/api/admin/recover-funds', methods=['POST'])
def api_recover_funds():
    """Drain an escrow wallet by id or address to a given address (arbiters only)"""
    arbiter = _user_from_request()
    data = _payload()
    account_ref = data.get('wallet_id') or data.get('address')
    if not account_ref:
        raise InvalidRequest('wallet_id or address is required')

    result = run_async(services.escrow.recover(account_ref, data.get('to_address'), arbiter))
    return jsonify({'success': True, 'result': result.to_dict()})


@flask_app.route('/health')
def health_check():
    return jsonify({
        'status': 'ok',
        'service': 'tg-adescrow-orchestrator',
        'network': config.TON_NETWORK,
        'scheduler': bool(services and services.scheduler.running),
        'timestamp': datetime.now().isoformat()
    })


# =============================================================================
# BOT CLASS
# =============================================================================

class AdEscrowBot:
    """Telegram front door: registers users and points them at the Mini App"""

    def __init__(self, token: str):
        self.token = token
        self.application = Application.builder().token(token).build()
        self._setup_handlers()

    def _setup_handlers(self):
        self.application.add_handler(CommandHandler("start", self.start_command))
        self.application.add_handler(CommandHandler("help", self.help_command))
        self.application.add_error_handler(self.error_handler)

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Register the user and show the Mini App button"""
        tg_user = update.effective_user
        if services and not services.store.get_user_by_telegram_id(tg_user.id):
            services.store.add_user(tg_user.id, tg_user.username, tg_user.first_name)
            logger.info(f"Registered user {tg_user.id}")

        welcome_text = (
            "🤖 <b>Welcome to TG AdEscrow!</b>\n\n"
            "Buy and sell Telegram channel ads with the payment held in escrow "
            "until the post has stayed up for the agreed time.\n\n"
            "Open the Mini App to get started."
        )
        keyboard = []
        if config.WEBAPP_URL.startswith('http'):
            keyboard.append([InlineKeyboardButton(
                text="🚀 Open Ad Marketplace", web_app=WebAppInfo(url=config.WEBAPP_URL)
            )])

        await update.message.reply_text(
            welcome_text,
            reply_markup=InlineKeyboardMarkup(keyboard) if keyboard else None,
            parse_mode='HTML'
        )

    async def help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        help_text = (
            "🆘 <b>TG AdEscrow Help</b>\n\n"
            "<b>Advertisers:</b> pick a channel, fund the escrow, approve the creative. "
            "Funds are released only after the post is verified.\n\n"
            "<b>Channel owners:</b> accept deals, submit the creative and schedule it. "
            "The bot publishes it and pays you once the hold period ends.\n\n"
            "<b>Commands:</b>\n"
            "/start - Welcome message\n"
            "/help - This help message"
        )
        if services and is_arbiter(services.store.get_user_by_telegram_id(update.effective_user.id),
                                   config.ADMIN_TELEGRAM_IDS):
            help_text += "\n\n<i>You are an arbiter: disputes are sent to you for review.</i>"
        await update.message.reply_text(help_text, parse_mode='HTML')

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error(f"Error: {context.error}", exc_info=context.error)
        if isinstance(update, Update) and update.effective_message:
            try:
                await update.effective_message.reply_text("⚠️ An error occurred. Please try again.")
            except Exception as e:
                logger.warning(f"Could not report error to user: {e}")

    def run(self):
        logger.info("Starting TG AdEscrow Bot...")
        self.application.run_polling(
            drop_pending_updates=True,
            allowed_updates=Update.ALL_TYPES
        )


# =============================================================================
# MAIN
# =============================================================================

def run_flask():
    logger.info(f"Starting Flask server on port {config.PORT}")
    flask_app.run(host='0.0.0.0', port=config.PORT, debug=False, use_reloader=False)


def main():
    if not config.BOT_TOKEN:
        raise ValueError("BOT_TOKEN environment variable is required")

    loop = start_background_loop()

    # Services talk to Telegram through their own Bot bound to the background loop
    service_bot = Bot(config.BOT_TOKEN)
    run_async(service_bot.initialize())

    configure(build_services(service_bot))
    services.store.init_database()

    flask_thread = threading.Thread(target=run_flask, daemon=True)
    flask_thread.start()
    logger.info("Flask server started")

    services.scheduler.start(loop)

    try:
        AdEscrowBot(config.BOT_TOKEN).run()
    finally:
        services.scheduler.stop()


if __name__ == "__main__":
    main()
