"""
The in-page DOM bridge.

The injected script only does DOM mechanics: finding candidate elements across
same-origin frames and shadow trees, describing them, clicking them and drawing the
background-mode overlay. All decisions are made on the Python side (see agent.py).
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .classifier import Candidate

logger = logging.getLogger("autoaccept.bridge")

BRIDGE_GLOBAL = '__autoAcceptBridge'

BRIDGE_SCRIPT = r"""
(() => {
    if (typeof window === 'undefined') return 'no-window';

    const MAX_TEXT = 200;
    const MAX_SHADOW_DEPTH = 10;
    const OVERLAY_ID = '__autoAcceptBgOverlay';
    const STYLE_ID = '__autoAcceptBgStyles';
    const CONTAINER_ID = 'aab-c';
    const STYLES = `
        #__autoAcceptBgOverlay { position: fixed; background: rgba(0, 0, 0, 0.98); z-index: 2147483647; font-family: sans-serif; color: #fff; display: flex; flex-direction: column; justify-content: center; align-items: center; pointer-events: none; opacity: 0; transition: opacity 0.3s; }
        #__autoAcceptBgOverlay.visible { opacity: 1; }
        .aab-slot { margin-bottom: 12px; width: 80%; padding: 8px; background: rgba(255,255,255,0.05); border-radius: 4px; }
        .aab-header { display: flex; justify-content: space-between; font-size: 11px; margin-bottom: 4px; }
        .aab-progress-track { height: 4px; background: rgba(255,255,255,0.1); border-radius: 2px; }
        .aab-progress-fill { height: 100%; width: 20%; background: #6b7280; transition: width 0.3s, background 0.3s; }
        .aab-slot.working .aab-progress-fill { background: #a855f7; }
        .aab-slot.done .aab-progress-fill { background: #22c55e; }
        .aab-slot .status-text { color: #6b7280; }
        .aab-slot.working .status-text { color: #a855f7; }
        .aab-slot.done .status-text { color: #22c55e; }
    `;

    const keys = new WeakMap();
    const registry = new Map();
    let nextKey = 1;

    const keyOf = (el) => {
        let key = keys.get(el);
        if (!key) {
            key = nextKey++;
            keys.set(el, key);
        }
        registry.set(key, new WeakRef(el));
        return key;
    };

    const lookup = (key) => {
        const ref = registry.get(key);
        const el = ref ? ref.deref() : null;
        if (!el) registry.delete(key);
        return el || null;
    };

    // Same-origin frames are walked recursively; cross-origin ones throw and are skipped.
    const getDocuments = (root = document) => {
        const docs = [root];
        try {
            root.querySelectorAll('iframe, frame').forEach(frame => {
                try {
                    const doc = frame.contentDocument || (frame.contentWindow && frame.contentWindow.document);
                    if (doc) docs.push(...getDocuments(doc));
                } catch (e) { }
            });
        } catch (e) { }
        return docs;
    };

    const getRoots = (root, depth = 0) => {
        const roots = [root];
        if (depth >= MAX_SHADOW_DEPTH || !root.querySelectorAll) return roots;
        root.querySelectorAll('*').forEach(el => {
            if (el.shadowRoot) roots.push(...getRoots(el.shadowRoot, depth + 1));
        });
        return roots;
    };

    const queryAll = (selector) => {
        const results = [];
        getDocuments().forEach(doc => {
            getRoots(doc).forEach(root => {
                try {
                    results.push(...root.querySelectorAll(selector));
                } catch (e) { }
            });
        });
        return results;
    };

    const styleOf = (el) => {
        const view = (el.ownerDocument && el.ownerDocument.defaultView) || window;
        return view.getComputedStyle(el);
    };

    const describe = (el, raw) => {
        const style = styleOf(el);
        const rect = el.getBoundingClientRect();
        return {
            key: keyOf(el),
            text: raw.slice(0, MAX_TEXT),
            overflow: raw.length > MAX_TEXT,
            visible: style.display !== 'none' && rect.width > 0,
            interactable: style.pointerEvents !== 'none',
            disabled: !!el.disabled
        };
    };

    const isVisible = (el) => {
        if (!el || !el.isConnected) return false;
        const style = styleOf(el);
        const rect = el.getBoundingClientRect();
        return style.display !== 'none' && rect.width > 0 && style.visibility !== 'hidden';
    };

    const commandText = (el) => {
        const commandSelectors = ['pre', 'code', 'pre code'];
        let text = '';

        let container = el.parentElement;
        let depth = 0;
        while (container && depth < 10) {
            let sibling = container.previousElementSibling;
            let siblingCount = 0;
            while (sibling && siblingCount < 5) {
                if (sibling.tagName === 'PRE' || sibling.tagName === 'CODE') {
                    const own = sibling.textContent.trim();
                    if (own.length > 0) text += ' ' + own;
                }
                for (const selector of commandSelectors) {
                    for (const codeEl of sibling.querySelectorAll(selector)) {
                        const found = (codeEl.textContent || '').trim();
                        if (found.length > 0 && found.length < 5000) text += ' ' + found;
                    }
                }
                sibling = sibling.previousElementSibling;
                siblingCount++;
            }
            if (text.length > 10) break;
            container = container.parentElement;
            depth++;
        }

        if (text.length === 0) {
            let sibling = el.previousElementSibling;
            let count = 0;
            while (sibling && count < 3) {
                for (const selector of commandSelectors) {
                    const codeEls = sibling.querySelectorAll ? sibling.querySelectorAll(selector) : [];
                    for (const codeEl of codeEls) {
                        if (codeEl.textContent) text += ' ' + codeEl.textContent.trim();
                    }
                }
                sibling = sibling.previousElementSibling;
                count++;
            }
        }

        if (el.getAttribute('aria-label')) text += ' ' + el.getAttribute('aria-label');
        if (el.getAttribute('title')) text += ' ' + el.getAttribute('title');
        return text.trim().toLowerCase();
    };

    const click = (el) => {
        try {
            el.click();
        } catch (e) { }
        el.dispatchEvent(new MouseEvent('click', { view: window, bubbles: true, cancelable: true }));
    };

    const appendWaiting = (container) => {
        const waiting = document.createElement('div');
        waiting.className = 'aab-waiting';
        waiting.style.cssText = 'color:#888; font-size:12px;';
        waiting.textContent = 'Scanning for conversations...';
        container.appendChild(waiting);
    };

    window.__autoAcceptBridge = {
        scan(selectors) {
            registry.clear();
            const seen = new Set();
            const found = [];
            selectors.forEach(selector => {
                queryAll(selector).forEach(el => {
                    if (seen.has(el)) return;
                    seen.add(el);
                    const raw = (el.textContent || '').trim();
                    if (raw) found.push(describe(el, raw));
                });
            });
            return found;
        },

        commandText(key) {
            const el = lookup(key);
            return el ? commandText(el) : '';
        },

        click(key) {
            const el = lookup(key);
            if (!el) return false;
            click(el);
            return true;
        },

        isVisible(key) {
            return isVisible(lookup(key));
        },

        findTabs(selectors) {
            for (const selector of selectors) {
                const tabs = queryAll(selector);
                if (tabs.length > 0) {
                    return {
                        selector,
                        tabs: tabs.map(el => ({
                            key: keyOf(el),
                            text: (el.textContent || '').trim(),
                            label: el.getAttribute('aria-label') || ''
                        }))
                    };
                }
            }
            return { selector: null, tabs: [] };
        },

        focusTab(key) {
            const el = lookup(key);
            if (!el) return false;
            el.dispatchEvent(new MouseEvent('click', { view: window, bubbles: true, cancelable: true }));
            return true;
        },

        clickFirst(selector) {
            const el = queryAll(selector)[0];
            if (!el) return false;
            el.click();
            return true;
        },

        countText(selector, texts) {
            return queryAll(selector).filter(el => texts.includes((el.textContent || '').trim())).length;
        },

        showOverlay(panelSelector) {
            if (document.getElementById(OVERLAY_ID)) return false;
            if (!document.getElementById(STYLE_ID)) {
                const style = document.createElement('style');
                style.id = STYLE_ID;
                style.textContent = STYLES;
                document.head.appendChild(style);
            }
            const overlay = document.createElement('div');
            overlay.id = OVERLAY_ID;
            const container = document.createElement('div');
            container.id = CONTAINER_ID;
            container.style.cssText = 'width:100%; display:flex; flex-direction:column; align-items:center;';
            overlay.appendChild(container);
            document.body.appendChild(overlay);

            const panel = panelSelector ? queryAll(panelSelector).find(p => p.offsetWidth > 50) : null;
            if (panel) {
                const sync = () => {
                    const r = panel.getBoundingClientRect();
                    Object.assign(overlay.style, { top: r.top + 'px', left: r.left + 'px', width: r.width + 'px', height: r.height + 'px' });
                };
                sync();
                new ResizeObserver(sync).observe(panel);
            } else {
                Object.assign(overlay.style, { top: '0', left: '0', width: '100%', height: '100%' });
            }
            appendWaiting(container);
            requestAnimationFrame(() => overlay.classList.add('visible'));
            return true;
        },

        updateOverlay(names, statuses) {
            const container = document.getElementById(CONTAINER_ID);
            if (!container) return false;
            if (names.length === 0) {
                if (!container.querySelector('.aab-waiting')) {
                    container.textContent = '';
                    appendWaiting(container);
                }
                return true;
            }
            const waiting = container.querySelector('.aab-waiting');
            if (waiting) waiting.remove();

            container.querySelectorAll('.aab-slot').forEach(slot => {
                if (!names.includes(slot.getAttribute('data-name'))) slot.remove();
            });

            names.forEach(name => {
                const isDone = statuses[name] === 'done';
                const statusClass = isDone ? 'done' : 'working';
                const statusText = isDone ? 'COMPLETED' : 'IN PROGRESS';
                const progressWidth = isDone ? '100%' : '66%';

                let slot = Array.from(container.querySelectorAll('.aab-slot')).find(s => s.getAttribute('data-name') === name);
                if (!slot) {
                    slot = document.createElement('div');
                    slot.setAttribute('data-name', name);
                    const header = document.createElement('div');
                    header.className = 'aab-header';
                    const nameSpan = document.createElement('span');
                    nameSpan.textContent = name;
                    header.appendChild(nameSpan);
                    const statusSpan = document.createElement('span');
                    statusSpan.className = 'status-text';
                    header.appendChild(statusSpan);
                    slot.appendChild(header);
                    const track = document.createElement('div');
                    track.className = 'aab-progress-track';
                    const fill = document.createElement('div');
                    fill.className = 'aab-progress-fill';
                    track.appendChild(fill);
                    slot.appendChild(track);
                    container.appendChild(slot);
                }
                slot.className = `aab-slot ${statusClass}`;
                slot.querySelector('.status-text').textContent = statusText;
                slot.querySelector('.aab-progress-fill').style.width = progressWidth;
            });
            return true;
        },

        hideOverlay() {
            const overlay = document.getElementById(OVERLAY_ID);
            if (!overlay) return false;
            overlay.classList.remove('visible');
            setTimeout(() => overlay.remove(), 300);
            return true;
        },

        diagnostics() {
            const docs = getDocuments();
            const all = [];
            docs.forEach(doc => getRoots(doc).forEach(root => all.push(...root.querySelectorAll('*'))));
            const acceptPatterns = ['accept', 'run command', 'allow', 'approve', 'confirm', 'reject'];
            const acceptElements = [];
            all.forEach(el => {
                const text = (el.textContent || '').toLowerCase().trim();
                if (text.length > 0 && text.length < 100 && acceptPatterns.some(p => text.includes(p))) {
                    const rect = el.getBoundingClientRect();
                    acceptElements.push({
                        tag: el.tagName,
                        text: text.substring(0, 50),
                        visible: rect.width > 0 && rect.height > 0,
                        inShadow: el.getRootNode() !== el.ownerDocument
                    });
                }
            });
            return {
                url: window.location.href.substring(0, 80),
                documents: docs.length,
                totalElements: all.length,
                buttons: all.filter(el => el.tagName === 'BUTTON').length,
                shadowRoots: all.filter(el => el.shadowRoot).length,
                acceptElements: acceptElements.slice(0, 15)
            };
        }
    };
    return 'bridge-ready';
})()
"""


def get_bridge_script() -> str:
    return BRIDGE_SCRIPT


@dataclass(frozen=True)
class Tab:
    key: int
    text: str
    label: str = ''


class PageBridge:
    """Python side of the bridge: each method is one value-returning evaluation."""

    def __init__(self, channel):
        self.channel = channel
        self.missing = False

    async def _call(self, name: str, *args) -> Any:
        expression = (
            f"(function(){{ const b = window.{BRIDGE_GLOBAL}; if (!b) return null; "
            f"return JSON.stringify(b.{name}(...{json.dumps(list(args))})); }})()"
        )
        value = await self.channel.evaluate(expression)
        if value is None:
            return None
        return json.loads(value) if isinstance(value, str) else value

    async def scan(self, selectors: List[str]) -> List[Candidate]:
        found = await self._call('scan', list(selectors))
        if found is None:
            if not self.missing:
                logger.warning(f"Bridge missing on {getattr(self.channel, 'target_id', '?')}; page may have reloaded")
            self.missing = True
            return []
        self.missing = False
        return [
            Candidate(
                key=item['key'],
                text=item.get('text', ''),
                visible=item.get('visible', False),
                interactable=item.get('interactable', False),
                disabled=item.get('disabled', False),
                overflow=item.get('overflow', False),
            )
            for item in found
        ]

    async def command_text(self, key: int) -> str:
        return await self._call('commandText', key) or ''

    async def click(self, key: int) -> bool:
        return bool(await self._call('click', key))

    async def is_visible(self, key: int) -> bool:
        return bool(await self._call('isVisible', key))

    async def find_tabs(self, selectors: List[str]) -> List[Tab]:
        found = await self._call('findTabs', list(selectors)) or {}
        if found.get('selector'):
            logger.debug(f"Found {len(found['tabs'])} tabs using selector: {found['selector']}")
        return [Tab(key=t['key'], text=t.get('text', ''), label=t.get('label', '')) for t in found.get('tabs', [])]

    async def focus_tab(self, key: int) -> bool:
        return bool(await self._call('focusTab', key))

    async def click_first(self, selector: str) -> bool:
        return bool(await self._call('clickFirst', selector))

    async def count_text(self, selector: str, texts: List[str]) -> int:
        return int(await self._call('countText', selector, list(texts)) or 0)

    async def show_overlay(self, panel_selector: Optional[str]) -> bool:
        return bool(await self._call('showOverlay', panel_selector))

    async def update_overlay(self, names: List[str], statuses: Dict[str, str]) -> bool:
        return bool(await self._call('updateOverlay', list(names), dict(statuses)))

    async def hide_overlay(self) -> bool:
        return bool(await self._call('hideOverlay'))

    async def diagnostics(self) -> Dict:
        return await self._call('diagnostics') or {}
